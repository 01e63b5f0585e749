"""
ローカル永続化
- メモ (notes/<key>)
- 最後に終了したセッションの記録 (records/last_session)
中身は解釈しないJSONブロブとして保存する
"""

import abc
import base64
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)

LAST_SESSION_KEY = "records/last_session"

_SAFE_PART = re.compile(r"[^A-Za-z0-9_.\-]")


def notes_key(name: str) -> str:
    return f"notes/{name}"


def _split_key(key: str) -> Tuple[str, str]:
    """"collection/document" に分解 (パス区切りや不正文字は '_' に置換)"""
    collection, _, document = key.partition("/")
    if not document:
        collection, document = "misc", collection
    collection = _SAFE_PART.sub("_", collection) or "misc"
    document = _SAFE_PART.sub("_", document.replace("/", "_")) or "_"
    return collection, document


class StorageBackend(abc.ABC):
    @abc.abstractmethod
    def save(self, key: str, data: Dict[str, Any]) -> None:
        pass

    @abc.abstractmethod
    def load(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abc.abstractmethod
    def list_keys(self, collection: str) -> List[str]:
        pass

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        pass


class FileStorageBackend(StorageBackend):
    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"📁 Initialized FileStorageBackend at {self.data_dir}")

    def _get_path(self, key: str) -> Path:
        collection, document = _split_key(key)
        return self.data_dir / collection / f"{document}.json"

    def save(self, key: str, data: Dict[str, Any]) -> None:
        path = self._get_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except OSError as e:
            logger.error(f"Failed to save {key} to file: {e}")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._get_path(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load {key} from file: {e}")
            return None

    def list_keys(self, collection: str) -> List[str]:
        folder = self.data_dir / _split_key(f"{collection}/_")[0]
        if not folder.exists():
            return []
        return sorted(f"{collection}/{p.stem}" for p in folder.glob("*.json"))

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()


class FirestoreStorageBackend(StorageBackend):
    def __init__(self, collection_prefix: str = "debate_"):
        self.collection_prefix = collection_prefix
        self._init_firebase()
        self.db = firestore.client()
        logger.info(f"🔥 Initialized FirestoreStorageBackend (prefix: {collection_prefix})")

    def _init_firebase(self):
        # 初期化済みなら何もしない
        if firebase_admin._apps:
            return

        # Base64エンコードされたサービスアカウントJSON
        service_account_b64 = os.getenv("FIREBASE_SERVICE_ACCOUNT_KEY")
        if service_account_b64:
            try:
                cred_dict = json.loads(base64.b64decode(service_account_b64).decode('utf-8'))
                firebase_admin.initialize_app(credentials.Certificate(cred_dict))
                logger.info("Successfully initialized Firebase with SERVICE_ACCOUNT_KEY")
                return
            except (ValueError, json.JSONDecodeError) as e:
                logger.error(f"Failed to decode/parse FIREBASE_SERVICE_ACCOUNT_KEY: {e}")

        cred_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if cred_path and os.path.exists(cred_path):
            firebase_admin.initialize_app(credentials.Certificate(cred_path))
        else:
            # Application Default Credentials
            logger.warning("No specific Firebase credentials found, trying default.")
            firebase_admin.initialize_app()

    def _doc(self, key: str):
        collection, document = _split_key(key)
        return self.db.collection(self.collection_prefix + collection).document(document)

    def save(self, key: str, data: Dict[str, Any]) -> None:
        try:
            self._doc(key).set(data)
        except Exception as e:
            logger.error(f"Failed to save {key} to Firestore: {e}")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            doc = self._doc(key).get()
            if doc.exists:
                return doc.to_dict()
            return None
        except Exception as e:
            logger.error(f"Failed to load {key} from Firestore: {e}")
            return None

    def list_keys(self, collection: str) -> List[str]:
        try:
            docs = self.db.collection(self.collection_prefix + collection).stream()
            return sorted(f"{collection}/{doc.id}" for doc in docs)
        except Exception as e:
            logger.error(f"Failed to list {collection} from Firestore: {e}")
            return []

    def delete(self, key: str) -> None:
        try:
            self._doc(key).delete()
        except Exception as e:
            logger.error(f"Failed to delete {key} from Firestore: {e}")


def create_storage(backend: str = "file", data_dir: str = "data") -> StorageBackend:
    """設定値からバックエンドを選ぶ"""
    if backend == "firestore":
        return FirestoreStorageBackend()
    return FileStorageBackend(data_dir)
