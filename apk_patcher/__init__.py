"""APK Patcher - select, apply and install patches for Android packages."""

try:
    from apk_patcher._version import version as __version__
except ImportError:
    __version__ = "0.0.0.dev0"
