"""
Updates Module

Update detection and execution for compose services.

Architecture:
- UpdateChecker: check cycle (tags -> candidate -> manifest verdict)
- UpdateJobRunner: turns an UpdateJob into executor runs per stack
- UpdateExecutor: pull / apply / health / rollback for one stack
"""

from updates.update_checker import UpdateChecker
from updates.update_executor import UpdateExecutor, UpdateValidationError
from updates.update_jobs import UpdateJobRunner
from updates.types import UpdateJob, UpdateMode, UpdateOutcome, UpdateScope, UpdateStatus

__all__ = [
    'UpdateChecker',
    'UpdateExecutor',
    'UpdateValidationError',
    'UpdateJobRunner',
    'UpdateJob',
    'UpdateMode',
    'UpdateOutcome',
    'UpdateScope',
    'UpdateStatus',
]
