"""Tests for order_sync."""
