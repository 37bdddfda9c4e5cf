"""セッション状態に応じた表示の切り替え。

TokenGate はセッション状態を読むだけで独自の状態を持たない。
マウント時にセッションをAPIディスパッチャへ引き渡し、
サインアウト状態では App Service のセッション確認を診断ログ目的でのみ行う。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from infoassist_auth.auth.session import AuthSessionManager, SessionPhase, SessionState

if TYPE_CHECKING:
    from infoassist_auth.api.client import ApiDispatcher
    from infoassist_auth.config.sources import AppServiceAuthSource

logger = logging.getLogger(__name__)


class GateView(Enum):
    """表示する画面の種別"""
    LOADING = "loading"
    CONFIG_ERROR = "config_error"
    SIGN_IN = "sign_in"
    CONTENT = "content"


@dataclass(frozen=True, slots=True)
class GateRender:
    """表示内容

    Attributes:
        view: 画面種別
        notice: インラインで表示するエラー（あれば）
    """
    view: GateView
    notice: Optional[str] = None

    def to_text(self) -> str:
        """テキスト表示（CLI用）"""
        if self.view is GateView.LOADING:
            lines = ["Loading authentication..."]
            if self.notice:
                lines.append(f"Authentication error: {self.notice}")
        elif self.view is GateView.CONFIG_ERROR:
            lines = ["Authentication Unavailable", self.notice or "認証の初期化に失敗しました"]
        elif self.view is GateView.SIGN_IN:
            lines = [
                "Authentication Required",
                "Please sign in to access the Information Assistant.",
                "[Sign In]",
            ]
            if self.notice:
                lines.append(self.notice)
        else:
            lines = []
        return "\n".join(lines)


def evaluate(state: SessionState) -> GateRender:
    """セッション状態から表示内容を決定する（純粋関数）"""
    if state.is_loading:
        return GateRender(GateView.LOADING, state.last_error)
    if state.phase is SessionPhase.INIT_FAILED:
        return GateRender(GateView.CONFIG_ERROR, state.last_error)
    if state.phase is not SessionPhase.READY:
        return GateRender(GateView.LOADING)
    if not state.accounts:
        return GateRender(GateView.SIGN_IN, state.last_error)
    return GateRender(GateView.CONTENT)


class TokenGate:
    """認証状態によるゲート"""

    def __init__(
        self,
        session: AuthSessionManager,
        dispatcher: "ApiDispatcher",
        app_service_probe: Optional["AppServiceAuthSource"] = None,
    ):
        """初期化

        Args:
            session: 認証セッション
            dispatcher: セッションを引き渡すAPIディスパッチャ
            app_service_probe: 診断用のセッション確認（省略時は確認しない）
        """
        self._session = session
        self._dispatcher = dispatcher
        self._probe = app_service_probe
        self._forwarded_handle: object = None
        self._nudged = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def render(self) -> GateRender:
        return evaluate(self._session.state)

    @property
    def is_mounted(self) -> bool:
        return self._unsubscribe is not None

    async def mount(self) -> None:
        """セッションの購読を開始する"""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._session.subscribe(self._on_state_changed)
        self._on_state_changed(self._session.state)

    async def unmount(self) -> None:
        """購読を解除し、実行中の診断を待ち合わせる"""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def sign_in(self) -> Optional[str]:
        """サインインボタンの動作"""
        return await self._session.login()

    def _on_state_changed(self, state: SessionState) -> None:
        if state.client_handle is not self._forwarded_handle:
            self._forwarded_handle = state.client_handle
            if state.client_handle is not None:
                self._dispatcher.attach(self._session)

        if not self._nudged and state.phase is SessionPhase.READY and not state.is_loading:
            self._nudged = True
            task = asyncio.get_running_loop().create_task(self._silent_login_nudge(state))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _silent_login_nudge(self, state: SessionState) -> None:
        # 診断目的のみ。結果で認証状態を変更しない。
        if state.accounts:
            logger.debug("キャッシュ済みのアカウントがあるためサインイン済みです")
            return
        if self._probe is None:
            return
        claims = await self._probe.probe()
        if claims:
            logger.info("App Service では認証済みですが、IDクライアントにアカウントがありません")
        else:
            logger.debug("App Service の認証情報はありません。IDクライアントのみで認証します")
