"""
Services module for the device link orchestrator
"""

from .device_link_server import DeviceLinkServer

__all__ = ['DeviceLinkServer']
