"""
                    TableCall Service

Backend for restaurant table service requests: customers call the
waiter, ask for the menu or the bill from their table, and staff see
every table colored by urgency until the request is resolved.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
