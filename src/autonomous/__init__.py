"""Autonomous operations package.

Modules:
    - runner: Refresh, verify, send and daily actions
    - orchestrator: Background tick coordination
"""
