"""Guardlink: device commands and presence broadcast for family safety dashboards."""
