"""
テスト共通設定
settings_manager はimport時に設定ファイルを作るので、先に一時ディレクトリへ向ける
"""

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="debate-tests-")
os.environ.setdefault("SETTINGS_PATH", os.path.join(_TMP, "config.json"))
os.environ.setdefault("DATA_DIR", os.path.join(_TMP, "data"))
os.environ.setdefault("STORAGE_BACKEND", "file")
