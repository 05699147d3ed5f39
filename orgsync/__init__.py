"""
orgsync

Record migration engine for moving object data between orgs and CSV files.

Supports:
- Dependency-ordered object processing (lookup and master-detail aware)
- Chunked, length-bounded retrieval queries
- Reconciliation by external id with insert/update/upsert/delete semantics
- Masking, value remapping and field-name remapping
- REST, Bulk API v1 and Bulk API v2 execution with fallback
- CSV source/target media with optional encryption
"""

__version__ = "0.1.0"
