"""
Environment defaults for the shader_make CLI.

Values come from ``SHADERMAKE_*`` environment variables or a ``.env``
file; command-line flags override them.
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ShaderMakeSettings(BaseSettings):
    """Defaults applied when the command line leaves a setting out."""

    model_config = SettingsConfigDict(
        env_prefix="SHADERMAKE_",
        env_file=".env",
        extra="ignore",
    )

    # Compiler
    COMPILER: Optional[str] = None
    SHADER_MODEL: str = "6_5"
    OPTIMIZATION_LEVEL: int = 3
    OUTPUT_EXT: Optional[str] = None

    # Scheduling
    RETRY_COUNT: int = 0

    # SPIR-V
    VULKAN_VERSION: str = "1.3"
    S_REG_SHIFT: int = 100
    T_REG_SHIFT: int = 200
    B_REG_SHIFT: int = 300
    U_REG_SHIFT: int = 400


def load_settings() -> ShaderMakeSettings:
    return ShaderMakeSettings()
