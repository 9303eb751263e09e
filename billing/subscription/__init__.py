"""Subscription lifecycle management."""
