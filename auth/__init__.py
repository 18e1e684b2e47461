"""auth/ -- Identity, token, and session core for Gatehouse.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or web/. api/ and web/ import from auth/, not
the other way around.

Collaborators are constructed once at startup (see api/main.py) and passed
explicitly: UserStore -> IdentityResolver / TokenService -> SessionManager
-> AuthGuard.
"""
