"""auth/ -- Authentication core for keygate.

Secret cipher, credential store, token issuer, refresh and authorization-code
ledgers, provider adapters and the AuthService that ties them together.

Layer rule: auth/ imports from core/ and third-party libraries only.
api/ imports from auth/, not the other way around.
"""
