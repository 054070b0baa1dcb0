"""Security module for secret masking."""

from .secrets import SecretMasker, SecretsMaskingFilter, MASK

__all__ = ['SecretMasker', 'SecretsMaskingFilter', 'MASK']
