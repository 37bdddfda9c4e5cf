"""
認証付きのバックエンドAPI呼び出し

各関数は ApiDispatcher を通じて送信し、成功以外のステータスを ApiRequestError として扱う。
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from infoassist_auth.api.client import ApiDispatcher
from infoassist_auth.errors import ApiRequestError, ErrorCode, create_api_error

logger = logging.getLogger(__name__)


@dataclass
class ChatOverrides:
    """チャットの上書き設定（送信時は snake_case のキーに変換される）"""
    semantic_ranker: Optional[bool] = None
    semantic_captions: Optional[bool] = None
    top: Optional[int] = None
    temperature: Optional[float] = None
    prompt_template: Optional[str] = None
    prompt_template_prefix: Optional[str] = None
    prompt_template_suffix: Optional[str] = None
    exclude_category: Optional[str] = None
    suggest_followup_questions: Optional[bool] = None
    by_pass_rag: Optional[bool] = None
    user_persona: Optional[str] = None
    system_persona: Optional[str] = None
    ai_persona: Optional[str] = None
    response_length: Optional[int] = None
    response_temp: Optional[float] = None
    selected_folders: Optional[str] = None
    selected_tags: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "semantic_ranker": self.semantic_ranker,
            "semantic_captions": self.semantic_captions,
            "top": self.top,
            "temperature": self.temperature,
            "prompt_template": self.prompt_template,
            "prompt_template_prefix": self.prompt_template_prefix,
            "prompt_template_suffix": self.prompt_template_suffix,
            "exclude_category": self.exclude_category,
            "suggest_followup_questions": self.suggest_followup_questions,
            "byPassRAG": self.by_pass_rag,
            "user_persona": self.user_persona,
            "system_persona": self.system_persona,
            "ai_persona": self.ai_persona,
            "response_length": self.response_length,
            "response_temp": self.response_temp,
            "selected_folders": self.selected_folders,
            "selected_tags": self.selected_tags,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass
class ChatRequest:
    """チャット送信内容"""
    history: List[Dict[str, Any]]
    approach: int
    overrides: ChatOverrides = field(default_factory=ChatOverrides)
    citation_lookup: Dict[str, Any] = field(default_factory=dict)
    thought_chain: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "history": self.history,
            "approach": self.approach,
            "overrides": self.overrides.to_payload(),
            "citation_lookup": self.citation_lookup,
            "thought_chain": self.thought_chain,
        }


@dataclass
class UploadStatusRequest:
    """アップロード状況の検索条件"""
    timeframe: int
    state: str
    folder: str = ""
    tag: str = ""


class InfoAssistApi:
    """バックエンドAPIのクライアント"""

    def __init__(self, dispatcher: ApiDispatcher):
        self._dispatcher = dispatcher

    async def chat(self, request: ChatRequest, cancel_event: Optional[asyncio.Event] = None) -> httpx.Response:
        """チャットを送信する（cancel_event で中断可能）"""
        response = await self._dispatcher.post("/chat", request.to_payload(), cancel_event=cancel_event)
        if not response.is_success:
            raise self._error("/chat", response, "Unknown error")
        return response

    async def get_all_upload_status(self, request: UploadStatusRequest) -> Dict[str, Any]:
        response = await self._dispatcher.post(
            "/getalluploadstatus",
            {
                "timeframe": request.timeframe,
                "state": request.state,
                "folder": request.folder,
                "tag": request.tag,
            },
        )
        parsed = self._json_or_none(response)
        if not response.is_success:
            message = parsed.get("error") if isinstance(parsed, dict) else None
            raise self._error("/getalluploadstatus", response, message or "Unknown error")
        return {"statuses": parsed}

    async def delete_item(self, path: str) -> bool:
        response = await self._dispatcher.post("/deleteItems", {"path": path})
        if not response.is_success:
            raise self._error("/deleteItems", response, f"HTTP error! status: {response.status_code}")
        return True

    async def resubmit_item(self, path: str) -> bool:
        response = await self._dispatcher.post("/resubmitItems", {"path": path})
        if not response.is_success:
            raise self._error("/resubmitItems", response, f"HTTP error! status: {response.status_code}")
        return True

    async def get_info(self) -> Any:
        return await self._get_json("/info", "Failed to get info")

    async def get_warning_banner(self) -> Any:
        return await self._get_json("/warningbanner", "Failed to get warning banner")

    async def get_application_title(self) -> Any:
        return await self._get_json("/applicationtitle", "Failed to get application title")

    async def get_status_log(self) -> Any:
        return await self._get_json("/statuslog", "Failed to get status log")

    async def get_tags(self) -> Any:
        return await self._get_json("/gettags", "Failed to get tags")

    async def get_feature_flags(self) -> Any:
        return await self._get_json("/getfeatureflags", "Failed to get feature flags")

    async def get_max_csv_file_size(self) -> Any:
        return await self._get_json("/getmaxcsvfilesize", "Failed to get max CSV file size")

    async def fetch_citation_file(self, citation: str) -> Any:
        return await self._get_json(
            f"/getcitationfilepath/{quote(citation, safe='')}",
            "Failed to fetch citation file",
        )

    async def upload_file(
        self,
        file: Path | bytes,
        filename: Optional[str] = None,
        tags: Optional[List[str]] = None,
        folder: str = "",
    ) -> httpx.Response:
        """ファイルをマルチパートでアップロードする

        Content-Type はトランスポートが境界文字列付きで設定するため指定しない。
        401 再送でも同じ内容を送れるよう、ファイルは事前にメモリへ読み込む。
        """
        if isinstance(file, Path):
            content = await asyncio.to_thread(file.read_bytes)
            filename = filename or file.name
        else:
            content = file
        fields: Dict[str, str] = {}
        if tags:
            fields["tags"] = json.dumps(tags)
        if folder:
            fields["folder"] = folder

        return await self._dispatcher.request(
            "POST",
            "/upload",
            files={"file": (filename or "upload", content)},
            data=fields or None,
        )

    async def _get_json(self, path: str, failure_message: str) -> Any:
        response = await self._dispatcher.get(path)
        if not response.is_success:
            raise self._error(path, response, failure_message)
        return response.json()

    @staticmethod
    def _json_or_none(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _error(path: str, response: httpx.Response, message: str) -> ApiRequestError:
        logger.error("API 呼び出しに失敗しました: %s (status=%s)", path, response.status_code)
        return ApiRequestError(
            create_api_error(
                code=ErrorCode.API_ERROR,
                message=message,
                details={"path": path, "status_code": response.status_code},
            )
        )
