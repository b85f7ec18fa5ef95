from app.models.base import Base
from app.models.entities import ConditionSnapshot, ErrorLog, Route, Stop

__all__ = [
    "Base",
    "Route",
    "Stop",
    "ConditionSnapshot",
    "ErrorLog",
]
