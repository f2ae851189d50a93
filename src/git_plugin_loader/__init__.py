"""
Git Plugin Loader

Installs WordPress plugins from GitHub repositories, keeps them in sync with
their upstream branch or tag and exports clean ZIP archives of them.
"""

__version__ = '1.0.0'
