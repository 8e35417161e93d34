"""
connectors: delegated (third-party) credential storage.

Handles:
  • Per-user, per-service token storage (replace / patch / revoke)
  • Validity checks and last-used bookkeeping
  • Fernet encryption of tokens at rest
  • Scheduled purge of expired tokens

Exchanging codes or refresh tokens with providers is the caller's job.
"""
