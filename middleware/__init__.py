"""
Middleware package for FastAPI application.
"""
from .admission import AdmissionMiddleware

__all__ = ["AdmissionMiddleware"]
