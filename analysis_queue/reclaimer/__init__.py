"""
Reclaimer module.
Contains the lease reclaimer that returns crashed workers' jobs to the queue.
"""

from analysis_queue.reclaimer.main import Reclaimer, run

__all__ = ["Reclaimer", "run"]
