"""
Engine Layer

Configuration and runtime wiring for the imbalance bar pipeline.
"""
