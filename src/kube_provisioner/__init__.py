"""Terraform-style plan/apply engine for Kubernetes resources."""

__version__ = "0.1.0"
