"""
Buildwatch - rebuild and hot-swap a server whenever its sources change.

Watches a source tree, runs the external build on every change, and replaces
the running server with the new artifact only when the build succeeds.
"""

__version__ = "0.1.0"
__author__ = "Philip Orange <git@philiporange.com>"
