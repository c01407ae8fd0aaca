from .resolver import AccessDecision, AccessResolver, hash_token

__all__ = ["AccessDecision", "AccessResolver", "hash_token"]
