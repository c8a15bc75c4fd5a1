"""Pydantic schemas for medreports."""
