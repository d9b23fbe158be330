"""Pydantic read models and event payloads."""
