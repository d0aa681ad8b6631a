"""Embedded Rego rule bundle evaluated by the rule engine."""
