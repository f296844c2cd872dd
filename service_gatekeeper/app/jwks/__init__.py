"""
Signing-key cache.

Keys are fetched from the issuer only when a token names a key id the
cache does not know; a refresh replaces the whole key map at once.
"""
