"""Subscription lifecycle and feature-usage metering engine."""
