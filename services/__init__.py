"""
Admission and detection services.
Can import from: repositories, models, caching, security
Must NOT import from: middleware
"""
