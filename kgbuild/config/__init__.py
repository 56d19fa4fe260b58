"""
Configuration System

Manages configuration for kgbuild with a layered approach.

Configuration Priority (highest to lowest):
    1. Programmatic (passed to KGBuildConfig())
    2. Environment variables (KGBUILD_* prefix)
    3. Config file (KGBuildConfig.from_file)
    4. Built-in defaults

Modules:
    settings: KGBuildConfig class
    providers: Protocol-specific defaults
"""

from kgbuild.config.settings import KGBuildConfig

__all__ = ["KGBuildConfig"]
