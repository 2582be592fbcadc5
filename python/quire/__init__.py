"""Quire: chapter tree editing and publish orchestration for books."""
