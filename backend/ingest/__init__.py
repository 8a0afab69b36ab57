"""Mail ingestion components for mailledger.

This package contains:
- Gmail OAuth token lifecycle (gmail_auth) and API client (gmail_client)
- Rule-based parse engine (rule_matcher, field_extractor, date_resolver, parse_engine)
- Batch sync orchestration with four parse modes (gmail_sync)
- Read-only integrity auditing (integrity)
"""
