from .command import Command

__all__ = ['Command']
