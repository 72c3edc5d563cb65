"""Entra ID password expiry monitoring and reminder delivery."""
