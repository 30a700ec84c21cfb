"""
HTTP routers for conversion and download
"""
