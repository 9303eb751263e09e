"""
At-rest encryption for sensitive payment data
"""
from .cipher import SecretCipher

__all__ = ['SecretCipher']
