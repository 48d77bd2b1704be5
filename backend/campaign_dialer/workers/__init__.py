"""
Workers Package
Background worker hosting the dialing engine
"""
