"""
tripmodel: taxi trip EDA, model fitting and in-database scoring

Samples trips from a relational table, explores their correlations, fits
regression models, translates fitted models into portable specs and
generated SQL, and validates that the database computes the same
predictions as the in-memory model.
"""

__version__ = "0.1.0"
