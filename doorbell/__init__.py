"""Smart doorbell face recognition server"""

__version__ = "1.0.0"
