"""
Application services. Every mutation runs resolve, then validate, then persist.
"""
