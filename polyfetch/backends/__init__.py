"""
Protocol backends for Polyfetch.

Supports http(s), local files, IPFS (ipfs/ipns/ipld) and hypercore.
"""

from .file_backend import FileBackend
from .http_backend import HTTPBackend, HTTPResponse
from .hyper_backend import HyperBackend
from .ipfs_backend import IPFSBackend

__all__ = ["FileBackend", "HTTPBackend", "HTTPResponse", "HyperBackend", "IPFSBackend"]
