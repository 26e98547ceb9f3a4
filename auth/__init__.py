"""auth/ -- Identity core for authcore: hashing, tokens, sessions, auth flows, request gates.

Layer rule: auth/ imports only stdlib + third-party libraries (and core/ for
configuration). It does NOT import from api/. api/ imports from auth/, not the
other way around.
"""
