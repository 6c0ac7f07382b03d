#!/usr/bin/env python3
"""
Memcached Exporter - Prometheus exporter for memcached statistics

This package scrapes the memcached ``stats`` family of commands over the
text protocol and republishes the results as Prometheus metrics.
"""

__version__ = '1.0.0'

# Submodules are imported explicitly to keep package import free of dependencies
__all__ = ['__version__']
