"""
Map Evaluation
==============

Geometric accuracy evaluation of reconstructed volumetric maps against a
ground-truth point cloud.

Module Organization:
-------------------
- core/: Evaluation engine (spatial index, distance estimation, error passes,
  coloring, coverage, exporters) and the volumetric map model it queries
- utils/: Shared utilities (configuration, map I/O, logging, errors)
- evaluator.py: Single-run orchestrator
- service.py: Long-lived evaluation session and request handling
"""

__version__ = "1.0.0"
__author__ = "Map Evaluation Team"
