"""base-env - self-healing provisioning for a version-pinned dev environment."""

try:
    from base_env._version import version as __version__
except ImportError:
    __version__ = "0.0.0.dev0"
