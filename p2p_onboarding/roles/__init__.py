"""Zodiac Roles v2 modifier deployment and permission scoping.

- `Roles modifier source <https://github.com/gnosisguild/zodiac-modifier-roles>`__
"""
