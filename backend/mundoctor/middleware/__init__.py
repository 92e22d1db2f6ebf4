"""
Mundoctor Middleware
Authorization policies, rate limiting, request audit trail and error handling
"""
