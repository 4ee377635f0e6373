from .mediator import QueueMediator
from .parser import EximParser
from .service import LogService

__all__ = ["EximParser", "LogService", "QueueMediator"]
