"""Scheduling and integrity core for service-business appointment booking."""
