"""Automation rules: schemas, action executors and the rule engine."""
