from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import os
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, Iterator, List, NamedTuple, Optional, Protocol
import uuid

import bcrypt
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
import httpx
from pydantic import BaseModel, ConfigDict, Field
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.getenv("RELACHAT_DATA_DIR", PACKAGE_DIR)
PUBLIC_DIR = os.getenv("RELACHAT_PUBLIC_DIR", os.path.join(PACKAGE_DIR, "public"))
USERS_DATA_PATH = os.getenv("USERS_DATA_PATH", os.path.join(DATA_DIR, "users.json"))
MESSAGES_DATA_PATH = os.getenv(
    "MESSAGES_DATA_PATH", os.path.join(DATA_DIR, "messages.json")
)
UPLOADS_DIR = os.getenv("UPLOADS_DIR", os.path.join(PUBLIC_DIR, "uploads"))
UPLOADS_URL_PREFIX = "/uploads"
UPLOAD_FIELD_NAME = "file"
UPLOAD_CHUNK_BYTES = 64 * 1024
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
MAX_JSON_BODY_BYTES = int(os.getenv("MAX_JSON_BODY_BYTES", str(10 * 1024)))
ALLOWED_UPLOAD_TYPES = ("jpeg", "jpg", "png", "gif", "pdf", "doc", "docx")
DEFAULT_PROFILE_PICTURE = "/assets/default_profile.png"
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))
BCRYPT_MAX_PASSWORD_BYTES = 72
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))
CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_COMPLETION_MODEL = os.getenv("OPENAI_COMPLETION_MODEL", "gpt-3.5-turbo-instruct")
COMPLETION_MAX_TOKENS = int(os.getenv("COMPLETION_MAX_TOKENS", "150"))
COMPLETION_TIMEOUT_SECONDS = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "30"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOGGER = logging.getLogger("relachat")

os.makedirs(UPLOADS_DIR, exist_ok=True)
os.makedirs(PUBLIC_DIR, exist_ok=True)


class User(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    password: str
    profile_picture: str = Field(DEFAULT_PROFILE_PICTURE, alias="profilePicture")


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    sender_id: Optional[str] = Field(None, alias="senderId")
    text: str
    file: Optional[str] = None
    timestamp: str


class CredentialsRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class PromptRequest(BaseModel):
    prompt: Optional[str] = None


class Attachment(NamedTuple):
    filename: str
    content_type: str
    stream: BinaryIO


class RelaChatError(Exception):
    status_code = 400
    body_key = "message"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(RelaChatError):
    default_message = "Invalid input"


class DuplicateEmail(RelaChatError):
    default_message = "Email is already registered"


class UnknownEmail(RelaChatError):
    default_message = "Email is not registered"


class InvalidPassword(RelaChatError):
    default_message = "Wrong password"


class UploadRejected(RelaChatError):
    default_message = "Only image and document files are allowed"


class UpstreamFailure(RelaChatError):
    status_code = 500
    body_key = "error"
    default_message = "Failed to get response from Rela AI"


class CompletionProviderError(Exception):
    pass


_ALLOWED_PUNCTUATION = frozenset(".,?!")
# Unicode space separators, line breaks and BOM; excludes \x1c-\x1f.
_WHITESPACE = frozenset(
    "\t\n\v\f\r \u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006"
    "\u2007\u2008\u2009\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
)


def is_valid_input(value: object) -> bool:
    """Accept non-empty strings made of ASCII letters, digits, whitespace and . , ? !"""
    if not isinstance(value, str) or not value:
        return False
    return all(
        (char.isascii() and char.isalnum())
        or char in _WHITESPACE
        or char in _ALLOWED_PUNCTUATION
        for char in value
    )


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonCollectionStore:
    """One JSON array per file, rewritten whole on every write.

    The lock only serialises callers inside this process.
    """

    def __init__(self, path: str, name: str) -> None:
        self.path = path
        self.name = name
        self._lock = threading.Lock()

    def _read_unlocked(self) -> List[Dict[str, object]]:
        try:
            with open(self.path, "r", encoding="utf-8") as data_file:
                records = json.load(data_file)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            LOGGER.error("Error reading %s data from %s: %s", self.name, self.path, exc)
            return []
        if not isinstance(records, list):
            LOGGER.error("Ignoring %s data in %s: not a JSON array", self.name, self.path)
            return []
        return records

    def _write_unlocked(self, records: List[Dict[str, object]]) -> bool:
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as data_file:
                json.dump(records, data_file, indent=2, ensure_ascii=False)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("Error writing %s data to %s: %s", self.name, self.path, exc)
            return False
        return True

    def read(self) -> List[Dict[str, object]]:
        with self._lock:
            return self._read_unlocked()

    def write(self, records: List[Dict[str, object]]) -> bool:
        with self._lock:
            return self._write_unlocked(records)

    @contextmanager
    def transaction(self) -> Iterator[List[Dict[str, object]]]:
        # Nothing is written back when the block raises.
        with self._lock:
            records = self._read_unlocked()
            yield records
            self._write_unlocked(records)

    def append(self, record: Dict[str, object]) -> bool:
        with self._lock:
            records = self._read_unlocked()
            records.append(record)
            return self._write_unlocked(records)


class UploadHandler:
    def __init__(
        self,
        directory: str,
        max_bytes: int = MAX_UPLOAD_BYTES,
        field_name: str = UPLOAD_FIELD_NAME,
        url_prefix: str = UPLOADS_URL_PREFIX,
    ) -> None:
        self.directory = directory
        self.max_bytes = max_bytes
        self.field_name = field_name
        self.url_prefix = url_prefix.rstrip("/")

    def is_allowed(self, filename: str, content_type: str) -> bool:
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        declared = (content_type or "").lower()
        extension_ok = ext in ALLOWED_UPLOAD_TYPES
        content_type_ok = any(token in declared for token in ALLOWED_UPLOAD_TYPES)
        return extension_ok and content_type_ok

    def _generate_filename(self, extension: str) -> str:
        millis = int(time.time() * 1000)
        suffix = secrets.randbelow(10**9 + 1)
        return f"{self.field_name}-{millis}-{suffix}{extension}"

    def save(self, attachment: Attachment) -> str:
        original = os.path.basename(attachment.filename or "")
        if not self.is_allowed(original, attachment.content_type):
            LOGGER.info(
                "Rejected upload %r with content type %r",
                original,
                attachment.content_type,
            )
            raise UploadRejected()
        os.makedirs(self.directory, exist_ok=True)
        filename = self._generate_filename(os.path.splitext(original)[1])
        target_path = os.path.join(self.directory, filename)
        written = 0
        try:
            with open(target_path, "wb") as output_file:
                while True:
                    chunk = attachment.stream.read(UPLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise UploadRejected(
                            f"File exceeds the {self.max_bytes} byte upload limit"
                        )
                    output_file.write(chunk)
        except Exception:
            if os.path.exists(target_path):
                os.remove(target_path)
            raise
        LOGGER.info("Stored upload %s (%d bytes)", filename, written)
        return f"{self.url_prefix}/{filename}"

    def resolve(self, filename: str) -> Optional[str]:
        if not filename or os.path.basename(filename) != filename or filename in (".", ".."):
            return None
        full_path = os.path.join(self.directory, filename)
        if not os.path.isfile(full_path):
            return None
        return full_path


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES]


def _hash_password(password: str, rounds: int) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=rounds)).decode(
        "utf-8"
    )


def _verify_password(password: str, hashed: object) -> bool:
    if not isinstance(hashed, str):
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))
    except ValueError:
        return False


def _find_user_record(
    users: List[Dict[str, object]], email: str
) -> Optional[Dict[str, object]]:
    for record in users:
        if isinstance(record, dict) and record.get("email") == email:
            return record
    return None


class AuthService:
    def __init__(self, store: JsonCollectionStore, rounds: int = BCRYPT_ROUNDS) -> None:
        self.store = store
        self.rounds = rounds

    def register(self, email: Optional[str], password: Optional[str]) -> User:
        if not is_valid_input(email) or not is_valid_input(password):
            raise InvalidInput()
        hashed = _hash_password(password, self.rounds)
        with self.store.transaction() as users:
            if _find_user_record(users, email) is not None:
                raise DuplicateEmail()
            user = User(id=str(uuid.uuid4()), email=email, password=hashed)
            users.append(user.model_dump(by_alias=True))
        LOGGER.info("Registered user %s", user.id)
        return user

    def login(self, email: Optional[str], password: Optional[str]) -> str:
        if not is_valid_input(email) or not is_valid_input(password):
            raise InvalidInput()
        record = _find_user_record(self.store.read(), email)
        if record is None:
            raise UnknownEmail()
        if not _verify_password(password, record.get("password")):
            raise InvalidPassword()
        user_id = str(record.get("id"))
        LOGGER.info("User %s logged in", user_id)
        return user_id


class MessageService:
    def __init__(self, store: JsonCollectionStore, uploads: UploadHandler) -> None:
        self.store = store
        self.uploads = uploads

    def send(
        self,
        sender_id: Optional[str],
        text: Optional[str],
        attachment: Optional[Attachment] = None,
    ) -> Message:
        if not is_valid_input(text):
            raise InvalidInput()
        file_url = self.uploads.save(attachment) if attachment is not None else None
        message = Message(
            id=str(uuid.uuid4()),
            sender_id=sender_id,
            text=text,
            file=file_url,
            timestamp=_utc_timestamp(),
        )
        self.store.append(message.model_dump(by_alias=True))
        LOGGER.info("Stored message %s from %s", message.id, sender_id)
        return message

    def list(self) -> List[Message]:
        messages: List[Message] = []
        for index, record in enumerate(self.store.read()):
            try:
                messages.append(Message.model_validate(record))
            except ValueError as exc:
                LOGGER.warning("Skipping malformed message at index %d: %s", index, exc)
        return messages


class OpenAICompletionProvider:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str = OPENAI_COMPLETION_MODEL,
        max_tokens: int = COMPLETION_MAX_TOKENS,
        timeout: float = COMPLETION_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise CompletionProviderError("OpenAI API key is not configured.")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(self, prompt: str) -> str:
        request_body: Dict[str, object] = {
            "model": self.model,
            "prompt": prompt,
            "max_tokens": self.max_tokens,
        }
        headers = self._headers()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/completions",
                json=request_body,
                headers=headers,
            )
        if response.status_code >= 400:
            raise CompletionProviderError(
                f"Completion request failed with status {response.status_code}."
            )
        try:
            text = response.json()["choices"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CompletionProviderError("Completion response was malformed.") from exc
        if not isinstance(text, str):
            raise CompletionProviderError("Completion response was malformed.")
        return text


class CompletionProvider(Protocol):
    async def complete(self, prompt: str) -> str:
        ...


class CompletionRelay:
    def __init__(self, provider: CompletionProvider) -> None:
        self.provider = provider

    async def ask(self, prompt: Optional[str]) -> str:
        if not is_valid_input(prompt):
            raise InvalidInput()
        try:
            return await self.provider.complete(prompt)
        except Exception as exc:
            LOGGER.exception("Error calling completion provider: %s", exc)
            raise UpstreamFailure() from exc


class RateLimiter:
    def __init__(self) -> None:
        self.hits: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def _sweep(self, window_start: float) -> None:
        for key in list(self.hits):
            recent = [ts for ts in self.hits[key] if ts > window_start]
            if recent:
                self.hits[key] = recent
            else:
                del self.hits[key]

    def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = time.time()
        window_start = now - window_seconds
        with self._lock:
            # Idle clients are forgotten at most once per window.
            if now - self._last_sweep >= window_seconds:
                self._sweep(window_start)
                self._last_sweep = now
            timestamps = [ts for ts in self.hits.get(key, []) if ts > window_start]
            if len(timestamps) >= limit:
                self.hits[key] = timestamps
                raise HTTPException(
                    status_code=429,
                    detail="Too many requests from this IP, please try again after 15 minutes.",
                )
            timestamps.append(now)
            self.hits[key] = timestamps


RATE_LIMITER = RateLimiter()
USERS_STORE = JsonCollectionStore(USERS_DATA_PATH, name="users")
MESSAGES_STORE = JsonCollectionStore(MESSAGES_DATA_PATH, name="messages")
UPLOAD_HANDLER = UploadHandler(UPLOADS_DIR)
AUTH_SERVICE = AuthService(USERS_STORE)
MESSAGE_SERVICE = MessageService(MESSAGES_STORE, UPLOAD_HANDLER)
COMPLETION_RELAY = CompletionRelay(
    OpenAICompletionProvider(OPENAI_BASE_URL, OPENAI_API_KEY)
)


def _rate_limit(scope: str, limit: int, window_seconds: int):
    def _dependency(request: Request) -> None:
        host = request.client.host if request.client else "unknown"
        key = f"{scope}:{host}"
        RATE_LIMITER.check(key, limit=limit, window_seconds=window_seconds)

    return _dependency


app = FastAPI(
    title="RelaChat Backend",
    version="0.1.0",
    dependencies=[
        Depends(
            _rate_limit(
                "api",
                limit=RATE_LIMIT_MAX_REQUESTS,
                window_seconds=RATE_LIMIT_WINDOW_SECONDS,
            )
        )
    ],
)


@app.middleware("http")
async def _limit_json_body(request: Request, call_next):
    content_type = request.headers.get("content-type", "")
    content_length = request.headers.get("content-length", "")
    if (
        content_type.startswith("application/json")
        and content_length.isdigit()
        and int(content_length) > MAX_JSON_BODY_BYTES
    ):
        return JSONResponse(status_code=413, content={"message": "Request body is too large"})
    return await call_next(request)


@app.middleware("http")
async def _security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
    response.headers.setdefault("X-DNS-Prefetch-Control", "off")
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RelaChatError)
async def _handle_relachat_error(request: Request, exc: RelaChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={exc.body_key: exc.message})


@app.exception_handler(StarletteHTTPException)
async def _handle_http_exception(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error_types = [error.get("type") for error in exc.errors()]
    LOGGER.info("Rejected malformed request to %s: %s", request.url.path, error_types)
    return JSONResponse(status_code=400, content={"message": InvalidInput.default_message})


async def _single_upload_field(request: Request) -> None:
    form = await request.form()
    file_fields = [
        key
        for key, value in form.multi_items()
        if isinstance(value, StarletteUploadFile) and value.filename
    ]
    if any(key != UPLOAD_FIELD_NAME for key in file_fields) or len(file_fields) > 1:
        LOGGER.info("Rejected unexpected file fields %s", file_fields)
        raise UploadRejected(f"Only one file is accepted, in the '{UPLOAD_FIELD_NAME}' field")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/register", status_code=201)
def register(payload: CredentialsRequest) -> Dict[str, str]:
    AUTH_SERVICE.register(payload.email, payload.password)
    return {"message": "Registration successful"}


@app.post("/login")
def login(payload: CredentialsRequest) -> Dict[str, str]:
    user_id = AUTH_SERVICE.login(payload.email, payload.password)
    return {"message": "Login successful", "userId": user_id}


@app.post(
    "/send-message",
    status_code=201,
    dependencies=[Depends(_single_upload_field)],
)
def send_message(
    sender_id: Optional[str] = Form(None, alias="senderId"),
    message_text: Optional[str] = Form(None, alias="messageText"),
    file: Optional[UploadFile] = File(None),
) -> Dict[str, Any]:
    attachment: Optional[Attachment] = None
    if file is not None and file.filename:
        attachment = Attachment(
            filename=file.filename,
            content_type=file.content_type or "",
            stream=file.file,
        )
    new_message = MESSAGE_SERVICE.send(sender_id, message_text, attachment)
    return {"message": "Message sent", "newMessage": new_message.model_dump(by_alias=True)}


@app.get("/messages", response_model=List[Message])
def list_messages() -> List[Message]:
    return MESSAGE_SERVICE.list()


@app.post("/ask-rela-ai")
async def ask_rela_ai(payload: PromptRequest) -> Dict[str, str]:
    response = await COMPLETION_RELAY.ask(payload.prompt)
    return {"response": response}


@app.get(UPLOADS_URL_PREFIX + "/{filename}")
def download_upload(filename: str) -> FileResponse:
    full_path = UPLOAD_HANDLER.resolve(filename)
    if full_path is None:
        raise HTTPException(status_code=404, detail="File not found.")
    return FileResponse(full_path)


app.mount("/", StaticFiles(directory=PUBLIC_DIR, html=True), name="public")
