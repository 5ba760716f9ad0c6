# call_config.py
# --------------------------------------------------------------------
# Runtime settings for the relay, the call connector and the control UI
# --------------------------------------------------------------------

import logging, os
from aiortc import RTCConfiguration, RTCIceServer

SIGNAL_HOST = os.environ.get("SIGNAL_HOST", "0.0.0.0")
SIGNAL_PORT = int(os.environ.get("SIGNAL_PORT", "8080"))
SIGNAL_URL = os.environ.get("SIGNAL_URL", f"ws://localhost:{SIGNAL_PORT}")
CONNECT_TIMEOUT = float(os.environ.get("CONNECT_TIMEOUT", "10"))
MAX_MSG_BYTES = 512 * 1024
PING_INTERVAL = 20

UI_PORT = int(os.environ.get("UI_PORT", "5000"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

STUN_URLS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]
TURN_URLS = ["turn:openrelay.metered.ca:80", "turn:openrelay.metered.ca:443"]
TURN_USERNAME = os.environ.get("TURN_USERNAME", "openrelayproject")
TURN_CREDENTIAL = os.environ.get("TURN_CREDENTIAL", "openrelayproject")

RTC_CONFIGURATION = RTCConfiguration([
    RTCIceServer(urls=STUN_URLS),
    RTCIceServer(urls=TURN_URLS, username=TURN_USERNAME, credential=TURN_CREDENTIAL),
])

# capture devices, in ffmpeg terms (device name + input format)
CAMERA_DEVICE = os.environ.get("CAMERA_DEVICE", "/dev/video0")
CAMERA_FORMAT = os.environ.get("CAMERA_FORMAT", "v4l2")
MIC_DEVICE = os.environ.get("MIC_DEVICE", "default")
MIC_FORMAT = os.environ.get("MIC_FORMAT", "pulse")
SCREEN_DEVICE = os.environ.get("SCREEN_DEVICE", ":0.0")
SCREEN_FORMAT = os.environ.get("SCREEN_FORMAT", "x11grab")
VIDEO_SIZE = os.environ.get("VIDEO_SIZE", "640x480")
FRAMERATE = os.environ.get("FRAMERATE", "30")


def video_options():
    return {"video_size": VIDEO_SIZE, "framerate": FRAMERATE}


def configure_logging(level=None):
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
