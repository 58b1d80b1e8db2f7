"""All magic numbers and configuration constants."""

# Effect defaults
FADE_DURATION = 3.0                 # seconds
PAN_DISTANCE = 25                   # percent of frame width
PAN_DURATION = 4.0                  # seconds
ZOOM_SCALE = 1.5                    # end scale factor
ZOOM_DURATION = 3.5                 # seconds
DEFAULT_DIRECTIONS = {"fade": "in", "pan": "left", "zoom": "in"}
MIN_EFFECT_DURATION = 0.1           # seconds: smallest fade/pan/zoom accepted

# Block defaults
HOLD_COLOR = "#000000"
HOLD_DURATION = 4.0                 # seconds
LOADSCREEN_MESSAGE = "Loading..."
LOADSCREEN_DURATION = 2.0           # seconds
LOADSCREEN_ICON = "default"
MEDIA_DURATION_ESTIMATE = 2.0       # seconds: progress estimate for a media switch

# Voice lines
SECONDS_PER_CHAR = 0.08             # length-based voice duration estimate
MIN_VOICE_ESTIMATE = 1.0            # seconds
NO_AUDIO_ID = "no-audio"            # placeholder contribution id in rendered scripts
ATTRIBUTION_TEMPLATE = "{name} said, {text}"
FUZZY_CONTAINS_MIN_CHARS = 10       # legacy matching: containment needs a longer line
FUZZY_PREFIX_CHARS = 20             # legacy matching: compare this many leading chars

# TTS
TTS_RETRY_COUNT = 3                 # max retries per synthesis call
TTS_RETRY_BASE_DELAY = 1.0          # seconds: base delay for exponential backoff
TTS_RATE = "-10%"                   # speech rate: -10% = 10% slower than default
TTS_AUDIO_FORMAT = "mp3"            # edge-tts streams MP3 frames
EMBER_VOICE = "en-US-AriaNeural"             # the story's own voice
NARRATOR_VOICE = "en-US-RogerNeural"         # narrator: deep, authoritative
EMBER_NAME = "Ember"
NARRATOR_NAME = "Narrator"

# Playback
PROGRESS_INTERVAL = 0.25            # seconds between progress ticks while audio plays

OUTPUT_DIR = "output"
VERSION = "0.1.0"

# Hardcoded English voice pool (avoids network call at startup)
VOICE_POOL = [
    "en-US-AriaNeural",
    "en-US-RogerNeural",
    "en-US-DavisNeural",
    "en-US-TonyNeural",
    "en-US-JennyNeural",
    "en-US-SaraNeural",
    "en-GB-SoniaNeural",
    "en-GB-RyanNeural",
    "en-GB-ThomasNeural",
    "en-AU-NatashaNeural",
    "en-AU-WilliamNeural",
    "en-CA-ClaraNeural",
    "en-CA-LiamNeural",
    "en-IN-NeerjaNeural",
    "en-IE-EmilyNeural",
]
