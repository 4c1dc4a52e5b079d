"""Database driver adapters, one per engine, looked up by driver kind."""

from adapters.base import ColumnInfo, DriverAdapter, ResultSet, RowStream, Session
from adapters.factory import get_adapter, registered_drivers

__all__ = ["ColumnInfo", "DriverAdapter", "ResultSet", "RowStream", "Session", "get_adapter", "registered_drivers"]
