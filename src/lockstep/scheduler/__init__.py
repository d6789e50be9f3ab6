from .base import BaseScheduler
from .cooperative import CooperativeScheduler
from .preemptive import PreemptiveScheduler

__all__ = [
    "BaseScheduler",
    "CooperativeScheduler",
    "PreemptiveScheduler",
]
