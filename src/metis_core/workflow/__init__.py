"""Workflow data model: executions, plugins, plugin types and DPS task composition."""
