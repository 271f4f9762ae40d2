# CUI // SP-CTI
"""Database, path and configuration helpers."""
