"""
Mundoctor API Routes
"""
