"""
Test package for the drvault backup engine.
"""
