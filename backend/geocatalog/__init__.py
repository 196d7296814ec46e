"""GeoCatalog package initializer for the geometry classification service.

This package contains the backend that ingests third-party geospatial
datasets and keeps a canonical, versioned catalog of their geometries and
attributes. Every dataset is transformed to EPSG:3857 (Web Mercator) at
import time by ogr2ogr before it is classified.

- Matches candidate geometries against stored collections in two phases
  and grades the match as full, subset, partial or none
- Builds a stable feature correspondence and revision chain per feature
- Appends attribute values only when they differ beyond float precision,
  text case and array ordering noise
- Queues ambiguous datasets as pending matches for manual merging

See DESIGN.md and module sub-docstrings for details on architecture and usage.
"""
