"""
Discovery module for locating DisperSync devices
"""

from .broadcast import BroadcastDiscoveryClient, parse_discovery_reply
from .models import DeviceEndpoint, DiscoveryReply
from .subnet_scan import SubnetScanner

__all__ = ['BroadcastDiscoveryClient', 'parse_discovery_reply', 'DeviceEndpoint', 'DiscoveryReply', 'SubnetScanner']
