"""Configuration, authentication, traffic accounting and asyncio TCP/UDP/SOCKS5 front-ends for a proxy tunnel."""

__version__ = "0.1.0"