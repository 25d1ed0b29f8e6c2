"""Circulation - Services Package

This package contains service modules for external integrations:
- HTTP client abstraction (pooled httpx client with retry)
- E-mail notification service (EmailJS REST API)
"""
