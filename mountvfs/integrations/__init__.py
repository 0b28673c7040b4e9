"""Clients for third-party storage APIs."""
