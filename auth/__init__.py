"""auth/ -- Authentication and session lifetime package for SessionKeep.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/ or client/.
api/ imports from auth/, not the other way around.
"""
