"""Tests for round-relay."""
