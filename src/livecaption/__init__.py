"""
LiveCaption.

Live speech-to-text for the start page caption widget: microphone capture on
the realtime callback path, window assembly with a bounded queue, a single
inference worker and an ordered status/output event channel.
"""

from pathlib import Path


def _get_version() -> str:
    """
    Get the package version from installed metadata or pyproject.toml.

    Returns:
        Version string (e.g., "0.1.0") or "dev" if unavailable
    """
    try:
        from importlib.metadata import version

        return version("livecaption")
    except Exception:
        pass

    try:
        import tomllib

        current = Path(__file__).resolve()
        for parent in current.parents:
            potential_path = parent / "pyproject.toml"
            if potential_path.exists():
                with open(potential_path, "rb") as f:
                    data = tomllib.load(f)
                return data.get("project", {}).get("version", "dev")
    except Exception:
        pass

    return "dev"


__version__ = _get_version()
