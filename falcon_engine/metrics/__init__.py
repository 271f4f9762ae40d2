#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Metrics Package: per-scope snapshots of the pattern store."""
