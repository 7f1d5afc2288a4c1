"""
FleetSync

Telemetry reconciliation and mission auto-scheduling for a fleet of
inspection robots.
"""

__version__ = "1.0.0"
