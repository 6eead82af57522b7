"""
Test package marker, so shared helpers import as `tests.fakes`.
"""
