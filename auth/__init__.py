"""
auth: Local account authentication.

Provides:
  • CredentialStore: durable account records with monotonic ids
  • Password hashing (bcrypt, configurable work factor)
  • PasswordAuthenticator: register / login
  • SessionTokenIssuer: HMAC-SHA256 bearer session tokens
"""
