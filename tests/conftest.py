import sys
import os
import tempfile
from pathlib import Path

# Ensure project root is on sys.path for `import oratora.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic defaults: mock scoring, in-memory session store, throwaway audio dir
os.environ.setdefault("AI_PROVIDER_SCORING", "mock")
os.environ.setdefault("SESSION_STORE_URL", "")
os.environ.setdefault("AUDIO_STORAGE_DIR", tempfile.mkdtemp(prefix="oratora-audio-"))
os.environ.setdefault("MOCK_SCORING_DELAY_MS", "0")
