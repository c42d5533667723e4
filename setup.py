#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Zeroute Setup Script (Legacy Compatibility)
===========================================

All configuration is in pyproject.toml (PEP 621). This shim only exists for
tooling that still calls setup.py directly:

    pip install -e .[test]
    python setup.py bdist_wheel  (legacy)
"""

from setuptools import setup

setup()
