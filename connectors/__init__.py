"""
connectors — the secret and OAuth side of the connector runtime.

Provides:
  • the config schema model (fields, OAuth result, endpoint token)
  • per-field RSA-OAEP / AES-GCM envelopes for config secrets
  • OAuth2 authorization-URL issuance, code exchange and refresh
  • the per-snapshot OAuth session and the retrying HTTP client
  • registration with the orchestration service
"""
