"""
Network tweaks package.

Each public module here is one tweak loaded by TweakRegistry. A tweak
module exports detect(), install(), uninstall() and status(), each taking
a TweakContext, plus TITLE, DESCRIPTION and a DEFAULTS settings mapping.
"""

__version__ = "1.0.0"
