"""
Mundoctor Repositories
"""
