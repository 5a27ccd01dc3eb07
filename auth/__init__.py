"""auth/ -- Passkey authentication package for Bookshelf.

Layer rule: auth/ imports only stdlib + third-party libraries, core/ (config),
and cache/ (challenge storage). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
