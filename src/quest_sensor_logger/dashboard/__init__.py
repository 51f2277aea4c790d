"""
Web dashboard for the sensor logger.
"""

from .app import DashboardApp, create_app

__all__ = ["DashboardApp", "create_app"]
