"""
Core business logic for performance assessments.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
or any infrastructure concerns. The assessment state machine and the rules
for trusting AI output can be tested in isolation.
"""
