"""
Install-token protocol.

An admin issues a single-use, TTL-bound token; a new agent or controller
presents it together with its client certificate to register once.
"""
