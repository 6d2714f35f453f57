"""Logging and Prometheus metrics for kubestack."""
