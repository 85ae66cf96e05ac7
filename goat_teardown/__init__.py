"""Teardown and Terraform state resync tooling for AWSGoat training deployments."""

__version__ = '1.0.0'
