"""
cert-renewal — scheduled renewal of short-lived ACME certificates.

Watches a persisted collection of issued certificates, renews the ones close
to expiry by reusing the issuer's cached domain authorizations, and reports
every attempt to a bounded history and an optional notification channel.
"""

__version__ = "0.1.0"
