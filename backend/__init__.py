"""
YouTube to MP3 converter backend
"""
