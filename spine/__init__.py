"""Decision spine: deterministic classification of care-operations signals.

This package contains the domain models and the evaluation pipeline,
isolated from source systems and presentation for easy testing and reasoning.
"""
