"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from src.core.exceptions import (
    ApplicationException,
    RepositoryException,
    ValidationException,
    InputException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    LLMException,
    DataIntegrityWarning,
)

__all__ = [
    "ApplicationException",
    "RepositoryException",
    "ValidationException",
    "InputException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "LLMException",
    "DataIntegrityWarning",
]
