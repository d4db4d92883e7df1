"""Authentication module.

Bearer credentials are HS256 JWTs signed with the shared secret from
``murmur.secrets.yaml``. Token issuance lives in the account service; this
module only verifies.

Services:
    - CredentialVerifier: turns a presented token into an Identity.
    - require_identity: FastAPI dependency for HTTP routes.
"""
