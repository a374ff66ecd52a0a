"""Prompt templates for the Gemini classifier."""
