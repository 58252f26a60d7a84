"""
Document Gateway service package.
"""
