#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Version information for MLXCtl
"""

__version__ = "0.2.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Version history
VERSION_HISTORY = [
    "0.2.0 - Redis dispatch queue with per-job leases, Kubernetes pod backend",
    "0.1.0 - Initial release with SSH/Podman job submission",
]
