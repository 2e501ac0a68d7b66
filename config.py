"""
Multiworld Bot Configuration
============================

1. 환경 변수 로드
2. Discord 설정
3. Archipelago 경로 설정
4. 저장소 (DB / 파일)
5. 게임 코드 / YAML 요청
6. 게임 생성 (Generate.py)
7. 게임 서버 (MultiServer.py)
8. 정리 (cleanup)
9. 첨부파일 다운로드
10. 로깅 설정
"""
import os
from dotenv import load_dotenv
import logging

# ============================================================================
# 1. 환경 변수 로드
# ============================================================================
load_dotenv()

# ============================================================================
# 2. DISCORD 설정
# ============================================================================
# Secrets stay in the environment.
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
COMMAND_PREFIX = "!"
ENABLE_PREFLIGHT_CHECKS = True

# ============================================================================
# 3. ARCHIPELAGO 경로 설정
# ============================================================================
# Interpreter used to run Generate.py / MultiServer.py, and the Archipelago checkout.
PYTHON_PATH = os.getenv("PYTHON_PATH")
AP_PATH = os.getenv("AP_PATH")
GENERATE_SCRIPT = "Generate.py"
SERVER_SCRIPT = "MultiServer.py"

# Public host name shown to players next to the server port.
HOST_DOMAIN = os.getenv("HOST_DOMAIN", "localhost")

# ============================================================================
# 4. 저장소 (DB / 파일)
# ============================================================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./apbot.sqlite")
GAMES_DIR = "./games"
YAML_DIR = "./yamls"
# JSON: {"version": [0, 4, 2], "games": {"A Link to the Past": "playable", ...}}
GAME_CATALOG_PATH = "./gamelist.json"

# ============================================================================
# 5. 게임 코드 / YAML 요청
# ============================================================================
CODE_LENGTH = 4
# How long a player has to answer a DM config request.
CONFIG_REQUEST_TIMEOUT_SECONDS = 30 * 60
# Discord select menus hold at most 25 options.
CONFIG_SELECT_MAX_OPTIONS = 24

# ============================================================================
# 6. 게임 생성 (Generate.py)
# ============================================================================
# Silence on stderr after an unrecognized error line before we assume a stuck prompt.
GENERATION_PROMPT_SILENCE_SECONDS = 3.0

# ============================================================================
# 7. 게임 서버 (MultiServer.py)
# ============================================================================
SERVER_PORT_BASE = 38281
SERVER_PORT_SPAN = 1000
PORT_MAX_ATTEMPTS = 50

SERVER_OUTPUT_TAIL_LINES = 5
SERVER_STATUS_MIN_INTERVAL_SECONDS = 1.0
SERVER_STATUS_DEBOUNCE_SECONDS = 0.5
SERVER_COMMAND_PREFIX = "/"

# "auto": use named pipes when the OS supports mkfifo, otherwise direct pipes.
SERVER_STDIO_MODE = os.getenv("SERVER_STDIO_MODE", "auto")  # "auto" | "direct" | "fifo"

# ============================================================================
# 8. 정리 (cleanup)
# ============================================================================
CLEANUP_MAX_AGE_DAYS = 14
CLEANUP_INTERVAL_HOURS = 24

# ============================================================================
# 9. 첨부파일 다운로드
# ============================================================================
ATTACHMENT_HTTP_TIMEOUT_TOTAL_SECONDS = 10.0
ATTACHMENT_HTTP_TIMEOUT_CONNECT_SECONDS = 3.0
ATTACHMENT_MAX_BYTES = 512 * 1024

# ============================================================================
# 10. 로깅 설정
# ============================================================================
LOG_FILE = os.getenv("LOG_FILE", "./logs/apbot.log")
LOG_LEVEL = logging.INFO
