"""
Mundoctor Services
Audit pipeline, identity sync engine and webhook processing
"""
