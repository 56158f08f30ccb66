"""Pydantic models for Zoom events, extracted facts and processing results."""
