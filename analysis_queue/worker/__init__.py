"""
Worker module.
Claims jobs and runs them through registered handlers.
"""

from analysis_queue.worker.handlers import WorkContext, register_handler
from analysis_queue.worker.main import Worker, run

__all__ = ["Worker", "WorkContext", "register_handler", "run"]
