#!/usr/bin/env python3
# CUI // SP-CTI
"""Falcon Evolution Package: promotion, decay, salience and maintenance jobs."""
