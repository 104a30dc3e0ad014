#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Setup script for GreenTrace

This file is kept for legacy compatibility and pip editable installs.
The main package configuration is in pyproject.toml.
"""

from setuptools import setup

# Version is set in pyproject.toml
setup()
