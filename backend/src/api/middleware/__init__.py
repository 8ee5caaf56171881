"""
API middleware: error handlers and request correlation.
"""
