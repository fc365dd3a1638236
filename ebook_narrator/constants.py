"""All magic numbers and configuration constants."""

# Segmentation
MAX_UNIT_LENGTH = 150               # chars, upper bound for synthesis-bound units
STRUCTURAL_MAX_LENGTH = 50          # paragraphs shorter than this without terminal punctuation are headings
SENTENCE_TERMINALS = "。！？.!?"      # marks a paragraph as prose rather than a heading
SENTENCE_SPLITTERS = "。！？；.!?;"   # sentence boundaries inside a paragraph
CLAUSE_SPLITTERS = "，,；;"          # secondary boundaries for over-long sentences
SOFT_BREAK_CHARS = ("、", " ", "的", "了", "在", "与", "和", "或")
SOFT_BREAK_WINDOW = 20              # chars before the limit searched for a soft break
HEADING_OPEN = "【"
HEADING_CLOSE = "】"
PLAYBACK_MAX_UNIT_LENGTH = 200      # units longer than this are skipped during playback

# Unit cache
CACHE_CAPACITY = 10

# Synthesis client
SYNTH_MAX_RETRIES = 3
SYNTH_BACKOFF_BASE = 1.0            # seconds: delay before the second attempt
SYNTH_BACKOFF_CAP = 5.0             # seconds: backoff ceiling
SYNTH_TIMEOUT = 30.0                # seconds: per-attempt timeout
HEALTH_TIMEOUT = 5.0                # seconds: reachability probe timeout
DEFAULT_SERVER_URL = "http://localhost:3001/api"
SERVER_URL_ENV = "EBOOK_NARRATOR_SERVER"
DEFAULT_VOLUME = "+0%"
DEFAULT_PITCH = "+0Hz"

# Voices
REMOTE_VOICE_PREFIX = "online:"
FALLBACK_LOCAL_VOICE = "zh-CN-YunYangNeural"   # used when a remote voice fails mid-narration
UNSTABLE_VOICE_MARKERS = ("yunyang",)          # local voices that misbehave at high speed
LOCAL_RATE_DAMPING = 0.9
LOCAL_RATE_CEILING = 1.5
RECOMMENDED_VOICE_MARKERS = ("Yunyang", "Xiaoxiao", "Xiaoyi")
VOICE_LANGUAGE_PREFIX = "zh"
MIN_SPEED = 0.5
MAX_SPEED = 2.0

# Playback timings (seconds)
REMOTE_ADVANCE_DELAY = 0.1
REMOTE_ERROR_DELAY = 0.5
LOCAL_START_DELAY = 0.1
LOCAL_ADVANCE_DELAY = 0.2
LOCAL_SPACED_ADVANCE_DELAY = 0.3
LOCAL_ERROR_DELAY = 1.0
LOCAL_WATCHDOG = 15.0
SEEK_SETTLE_DELAY = 0.2
SKIP_DELAY = 0.1
LOCAL_BASE_WPM = 200                # pyttsx3 words-per-minute at speed 1.0

# Batch pipeline
BATCH_FAILURE_THRESHOLD = 10        # consecutive failures before asking the user
BATCH_SUCCESS_DELAY = 0.2           # seconds: rate limit between successful units
BATCH_RETRY_DELAY = 1.0             # seconds: pause before retrying a failed unit
BATCH_COOLDOWN_DELAY = 3.0          # seconds: extra wait when the service is unreachable

# Export
EXPORT_PREFIX = "ebook-tts"
SSML_BREAK_MS = 500
SSML_LANGUAGE = "zh-CN"
IMAGE_LABEL = "Image"
LIST_BULLET = "•"
OUTPUT_DIR = "output"
VERSION = "0.1.0"

# Fallback catalog when neither the service nor the device lists any voices
DEFAULT_VOICES = [
    ("zh-CN-YunYangNeural", "Yunyang - male"),
    ("zh-CN-XiaoxiaoNeural", "Xiaoxiao - female"),
    ("zh-CN-YunyeNeural", "Yunye - male"),
    ("zh-CN-XiaoyiNeural", "Xiaoyi - female"),
    ("zh-CN-YunjianNeural", "Yunjian - male"),
    ("zh-CN-XiaochenNeural", "Xiaochen - female"),
]
