"""
Feeder Agent

Field polling agent that reads holding registers from Modbus TCP feeder
relays and analyzers and reports the readings to the monitoring backend.
"""

__version__ = "1.2.0"
