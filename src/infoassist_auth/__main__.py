"""InfoAssist認証クライアントのCLIエントリーポイント"""

import json
import logging
import sys
from typing import Any, Dict, List

from pydantic import ValidationError

from infoassist_auth import __version__
from infoassist_auth.cli.main import AuthCLI, print_help
from infoassist_auth.cli.parser import ArgumentParser
from infoassist_auth.config.settings import AuthSettings


def main(args: List[str] | None = None) -> int:
    """
    InfoAssist認証クライアントのメインエントリーポイント

    Args:
        args: コマンドライン引数（Noneの場合はsys.argvを使用）

    Returns:
        終了コード（0: 成功、非0: エラー）
    """
    if args is None:
        args = sys.argv[1:]

    # 引数解析
    parser = ArgumentParser()
    parsed = parser.parse(args)

    # バージョン表示
    if parsed.options.get("version"):
        print(f"infoassist-auth {__version__}")
        return 0

    # ヘルプ表示
    if parsed.options.get("help") or (not parsed.command and not args):
        print_help()
        return 0

    # バリデーション
    validation = parser.validate(parsed)
    if not validation.is_valid:
        for error in validation.errors:
            print(error, file=sys.stderr)
        return 1

    # 設定読み込み
    overrides: Dict[str, Any] = {}
    if parsed.options.get("base_url"):
        overrides["base_url"] = parsed.options["base_url"]
    try:
        settings = AuthSettings(**overrides)
    except ValidationError as exc:
        if parsed.command in ("help", "version"):
            settings = AuthSettings.model_construct()
        else:
            print(f"Configuration error: {exc}", file=sys.stderr)
            return 1

    _configure_logging(settings, verbose=bool(parsed.options.get("verbose")))
    logging.getLogger(__name__).debug(
        "設定を読み込みました: %s",
        json.dumps(settings.dump_masked(), ensure_ascii=False),
    )

    cli = AuthCLI(settings, output_format=parsed.output_format)
    return cli.run(parsed.command, parsed.args, options=parsed.options)


def _configure_logging(settings: AuthSettings, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.getLevelNamesMapping()[settings.log_level]
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not verbose:
        logging.getLogger("msal").setLevel(max(level, logging.WARNING))


if __name__ == "__main__":
    sys.exit(main())
