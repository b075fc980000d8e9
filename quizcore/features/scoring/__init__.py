"""
Quiz scoring and level progression.

Pure functions only: identical inputs always give identical results.
"""
