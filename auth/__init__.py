"""auth/ -- Session and identity authentication for the trip planner backend.

Layer rule: auth/ imports only stdlib + third-party libraries (and core/ for
settings types). It does NOT import from api/.
api/ imports from auth/, not the other way around.
Only auth/dependencies.py may import FastAPI.
"""
