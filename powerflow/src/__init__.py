"""
SolarEdge power-flow poller package.

Fetches a site's current power flow from the SolarEdge monitoring API once
per invocation, derives directional energy metrics (PV production, battery
charge/discharge, grid import/export, load), and publishes them as
change-detected values to a local SQLite or Redis state store.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""
