#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Scoring Package: confidence and priority computations."""
