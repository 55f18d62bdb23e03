"""gesmind CLI: provider configuration and interactive account setup."""
