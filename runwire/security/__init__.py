from .tokens import TokenAuthority

__all__ = ["TokenAuthority"]
