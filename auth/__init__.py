"""auth/ -- Identity and authorization core for the Precinct admin panel.

Credential hashing, the OAuth handshake, provider adapters, sessions, role
mapping, page permissions and the failed-login lockout.

Layer rule: auth/ imports from core/, cache/ and docstore/ plus third-party
libraries. It does NOT import from api/. api/ imports from auth/, not the
other way around.
"""
