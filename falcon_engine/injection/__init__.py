#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Injection Package: task profiles, baselines, warning selection and formatting."""
