"""
ATM Gateway
===========

Authentication and API gateway for the Habo banking frontend.

Subpackages:
    - auth: Cognito OIDC login flow, session JWTs, server-side sessions
    - proxy: Chat-completion and market-data pass-throughs
"""

__version__ = "1.0.0"
