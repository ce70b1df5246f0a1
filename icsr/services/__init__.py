"""Workflow, validation, audit and notification services."""
