"""AgencyFlow Source Package.

Marketing automation for insurance agencies: audience filters,
workflow graphs and paced, scheduled email enrollment.

Layers:
    - core: Configuration, logging, exceptions
    - db: Database and models
    - integrations: External services (email hand-off)
    - engine: Business logic (conditions, filters, workflows, pacing)
    - autonomous: Scheduled runs and the orchestrator
"""

__version__ = "0.1.0"
