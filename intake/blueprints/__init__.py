"""
Intake Progress Service
Blueprint registry.
"""
