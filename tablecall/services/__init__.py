"""
                        Services Module

Infrastructure services behind the engine, using the hybrid pattern:
an in-memory implementation for development and a real one for
production.

Services:
    - store: call store (in-memory / SQLAlchemy)
    - excel_manager: file-locked Excel export of call history
"""

from tablecall.services.excel_manager import ExcelManager

__all__ = ["ExcelManager"]
