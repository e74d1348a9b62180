"""Reconciles CARMA funding requests with Bazo chain accounts."""

__version__ = "0.1.0"
