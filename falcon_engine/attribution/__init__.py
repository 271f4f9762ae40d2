#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Attribution Package: failure-mode resolution, noncompliance checks, orchestration."""
