"""Operator command line for the mealcycle billing engine."""
