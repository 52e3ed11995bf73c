import os
import sys

from yt_dlp.version import __version__ as ytdlp_version

from streaming import __version__


def get_runtime_info():
    return {
        "app_version": os.environ.get("STREAMGATE_VERSION", __version__),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
    }
