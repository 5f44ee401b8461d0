"""Trusted OpenPGP public keys (``*.asc``) for firmware signature checks."""
