"""
Core business logic for video question answering.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
boto3 or the Anthropic SDK. Everything external is reached through the
protocols in `interfaces`, so the pipeline can be tested with in-memory
stores and fake model providers.
"""
