from .admin_mixin import AdminMixin
from .workers_mixin import WorkersMixin

__all__ = [
    "AdminMixin",
    "WorkersMixin",
]
