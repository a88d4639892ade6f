# utils/sheet_store.py
"""
表格存储层。

唯一的持久化介质是一个电子表格：按 A1 区间读 / 追加 / 覆盖写，
没有事务、没有行锁、没有唯一约束。所有不变量由上层业务代码保证。

- GoogleSheetStore: Google Sheets v4 REST（requests + 服务账号 JWT）
- MemorySheetStore: 进程内实现，本地开发和测试使用
"""
import json
import logging
import re
import threading
import time
from urllib.parse import quote

import jwt
import requests

from utils.errors import UpstreamFailure

logger = logging.getLogger("sheet_store")

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"

_A1_RE = re.compile(r"^([A-Z]+)?(\d+)?(?::([A-Z]+)?(\d+)?)?$")


# ----------------- A1 区间工具 -----------------
def column_index(letters: str) -> int:
    """A -> 0, B -> 1, AA -> 26"""
    index = 0
    for ch in letters:
        index = index * 26 + (ord(ch) - ord("A") + 1)
    return index - 1


def parse_range(range_: str):
    """
    'InviteCodes!D5:F5' -> ('InviteCodes', 3, 5, 5, 5)
    返回 (sheet, start_col, start_row, end_col, end_row)，列下标从 0 开始，行号从 1 开始，
    缺省部分为 None
    """
    if "!" in range_:
        sheet, ref = range_.split("!", 1)
    else:
        sheet, ref = range_, ""
    sheet = sheet.strip("'")
    if not ref:
        return sheet, 0, None, None, None

    match = _A1_RE.match(ref.upper())
    if not match:
        raise ValueError(f"Invalid A1 range: {range_}")
    start_col, start_row, end_col, end_row = match.groups()
    return (
        sheet,
        column_index(start_col) if start_col else 0,
        int(start_row) if start_row else None,
        column_index(end_col) if end_col else None,
        int(end_row) if end_row else None,
    )


def table_range(model, row=None, start=None, end=None):
    """
    按模型拼区间：
        table_range(InviteCode)              -> 'InviteCodes!A:F'
        table_range(InviteCode, 7, 'D', 'F') -> 'InviteCodes!D7:F7'
    """
    first, last = model.__columns__
    start = start or first
    end = end or last
    if row is None:
        return f"{model.__sheet__}!{start}:{end}"
    if start == end:
        return f"{model.__sheet__}!{start}{row}"
    return f"{model.__sheet__}!{start}{row}:{end}{row}"


def is_header(model, row) -> bool:
    return bool(row) and str(row[0]).strip().lower() == model.HEADER[0]


def read_records(store, model):
    """读取整张表并转成模型对象（跳过表头和空行），row_number 为表格行号"""
    rows = store.get(table_range(model))
    records = []
    for index, row in enumerate(rows):
        if index == 0 and is_header(model, row):
            continue
        if not row or not any(str(v).strip() for v in row):
            continue
        records.append(model.from_row(row, row_number=index + 1))
    return records


# ----------------- 存储接口 -----------------
class SheetStore:
    """
    get / append / update / batch_update 四个操作，语义与 Sheets values API 一致。
    idempotent=True 表示调用方确认该写入可以安全重试。
    """

    def get(self, range_):
        raise NotImplementedError

    def append(self, range_, rows):
        raise NotImplementedError

    def update(self, range_, values, idempotent=False):
        raise NotImplementedError

    def batch_update(self, data, idempotent=False):
        """data: [(range, values), ...]"""
        for range_, values in data:
            self.update(range_, values, idempotent=idempotent)

    def ensure_headers(self, models):
        """空表补表头，已有数据的表不动"""
        for model in models:
            rows = self.get(f"{model.__sheet__}!A1:{model.__columns__[1]}1")
            if not rows or not any(rows[0]):
                self.update(f"{model.__sheet__}!A1", [model.HEADER], idempotent=True)
                logger.info(f"[ensure_headers] 表 {model.__sheet__} 已写入表头")


class MemorySheetStore(SheetStore):
    """
    进程内表格。每个操作单独加锁（单个请求原子），操作之间不保证原子性，
    与真实表格服务一致；latency 可以放大竞态窗口，便于并发测试
    """

    def __init__(self, tables=None, latency=0.0):
        self._lock = threading.Lock()
        self.tables = {name: [list(r) for r in rows] for name, rows in (tables or {}).items()}
        self.latency = latency
        self.calls = []

    def _pause(self):
        if self.latency:
            time.sleep(self.latency)

    @staticmethod
    def _trim(row):
        row = list(row)
        while row and (row[-1] is None or row[-1] == ""):
            row.pop()
        return row

    def get(self, range_):
        self._pause()
        sheet, start_col, start_row, end_col, end_row = parse_range(range_)
        with self._lock:
            self.calls.append(("get", range_))
            table = self.tables.get(sheet, [])
            first = (start_row or 1) - 1
            last = end_row if end_row is not None else len(table)
            result = []
            for row in table[first:last]:
                stop = end_col + 1 if end_col is not None else None
                result.append([str(v) for v in self._trim(row[start_col:stop])])
            while result and not result[-1]:
                result.pop()
            return result

    def append(self, range_, rows):
        self._pause()
        sheet, start_col, _, _, _ = parse_range(range_)
        with self._lock:
            self.calls.append(("append", range_))
            table = self.tables.setdefault(sheet, [])
            while table and not self._trim(table[-1]):
                table.pop()
            for values in rows:
                table.append([""] * start_col + [v for v in values])
            return len(table)

    def update(self, range_, values, idempotent=False):
        self._pause()
        sheet, start_col, start_row, _, _ = parse_range(range_)
        with self._lock:
            self.calls.append(("update", range_))
            table = self.tables.setdefault(sheet, [])
            row_number = start_row or 1
            for offset, new_values in enumerate(values):
                index = row_number - 1 + offset
                while len(table) <= index:
                    table.append([])
                row = table[index]
                needed = start_col + len(new_values)
                if len(row) < needed:
                    row.extend([""] * (needed - len(row)))
                for col, value in enumerate(new_values):
                    row[start_col + col] = value

    def dump(self, sheet):
        with self._lock:
            return [[str(v) for v in self._trim(r)] for r in self.tables.get(sheet, [])]


class GoogleSheetStore(SheetStore):
    """
    Google Sheets values API。
    读请求超时 / 连接错误 / 5xx 自动重试 1 次；写请求只有 idempotent=True 时才重试，
    避免结果未知的写入被重复执行
    """

    def __init__(self, spreadsheet_id, service_account_info, timeout=10, session=None):
        if not spreadsheet_id:
            raise RuntimeError("Missing GOOGLE_SPREADSHEET_ID")
        if isinstance(service_account_info, str):
            service_account_info = json.loads(service_account_info or "{}")
        self.spreadsheet_id = spreadsheet_id
        self.client_email = service_account_info.get("client_email")
        self.private_key = (service_account_info.get("private_key") or "").replace("\\n", "\n")
        self.timeout = timeout
        self.http = session or requests.Session()
        self._token = None
        self._token_expires = 0
        self._token_lock = threading.Lock()

    # ---------- 鉴权 ----------
    def _access_token(self):
        with self._token_lock:
            now = int(time.time())
            if self._token and now < self._token_expires - 60:
                return self._token

            assertion = jwt.encode(
                {
                    "iss": self.client_email,
                    "scope": SHEETS_SCOPE,
                    "aud": GOOGLE_TOKEN_URL,
                    "iat": now,
                    "exp": now + 3600,
                },
                self.private_key,
                algorithm="RS256",
            )
            try:
                resp = self.http.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": assertion,
                    },
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise UpstreamFailure(f"Google token request failed: {e}")
            if resp.status_code != 200 or not resp.json().get("access_token"):
                raise UpstreamFailure(f"Google token request failed: {resp.status_code} {resp.text}")

            data = resp.json()
            self._token = data["access_token"]
            self._token_expires = now + int(data.get("expires_in", 3600))
            return self._token

    # ---------- HTTP ----------
    def _url(self, suffix):
        return f"{SHEETS_API}/{self.spreadsheet_id}/{suffix}"

    def _request(self, method, url, retry, **kwargs):
        attempts = 2 if retry else 1
        last_error = None
        for attempt in range(1, attempts + 1):
            headers = {"Authorization": f"Bearer {self._access_token()}"}
            try:
                resp = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"[sheet_store] {method} {url} 第 {attempt} 次请求异常: {last_error}")
                continue

            if resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}: {resp.text}"
                logger.warning(f"[sheet_store] {method} {url} 第 {attempt} 次请求失败: {last_error}")
                continue
            if resp.status_code >= 400:
                raise UpstreamFailure(f"Sheets API error HTTP {resp.status_code}: {resp.text}")
            return resp.json() if resp.content else {}

        raise UpstreamFailure(f"Sheets API unavailable: {last_error}")

    # ---------- values API ----------
    def get(self, range_):
        data = self._request("GET", self._url(f"values/{quote(range_)}"), retry=True)
        return data.get("values", [])

    def append(self, range_, rows):
        data = self._request(
            "POST",
            self._url(f"values/{quote(range_)}:append"),
            retry=False,
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json={"values": rows},
        )
        return data.get("updates", {}).get("updatedRange")

    def update(self, range_, values, idempotent=False):
        self._request(
            "PUT",
            self._url(f"values/{quote(range_)}"),
            retry=idempotent,
            params={"valueInputOption": "RAW"},
            json={"range": range_, "values": values},
        )

    def batch_update(self, data, idempotent=False):
        if not data:
            return
        self._request(
            "POST",
            self._url("values:batchUpdate"),
            retry=idempotent,
            json={
                "valueInputOption": "RAW",
                "data": [{"range": r, "values": v} for r, v in data],
            },
        )
