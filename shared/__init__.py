"""
Shared utilities for MSSP components.

This package contains common functionality used by the API service and scripts:
- logging_config: Consistent logging setup
- token_utils: HMAC-signed bearer tokens
"""
