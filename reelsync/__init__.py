"""
ReelSync Python Service
Turns completed Zoom cloud recordings into ClickUp task updates
"""

__version__ = "0.1.0"
