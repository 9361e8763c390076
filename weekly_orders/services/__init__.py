"""
                        Services Module

Business logic of the weekly ordering service. Services with an external
backend have an in-process (development) and a real (production)
implementation selected by a factory.

Services:
    - menu_normalizer / menu_service: canonical weekly menu
    - aggregator: weekly aggregate of the order rows
    - menu_changes: change-reset decision on menu reloads
    - reconciler: cached summary kept consistent with the change feed
    - orders: counters and comments
    - cache / feed: snapshot cache and change feed (memory or Redis)
    - notifications: summary e-mail (mock or SendGrid)
    - excel_manager: menu upload parsing and summary export
"""

from weekly_orders.services.excel_manager import ExcelManager

__all__ = ["ExcelManager"]
