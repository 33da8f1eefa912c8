"""
API module for device session control and monitoring
"""

from .main_api import DeviceLinkAPI
from .device_routes import create_device_routes
from .system_routes import create_system_routes

__all__ = ['DeviceLinkAPI', 'create_device_routes', 'create_system_routes']
