# CUI // SP-CTI
"""SQLite schema for the Falcon engine."""
