"""
FastAPI routers for the client import API.
"""
