"""
コマンドライン引数の解析

コマンド解析とバリデーション機能を提供
"""

from dataclasses import dataclass
from typing import Any, Dict, List


# 有効なコマンド一覧
VALID_COMMANDS = {"config", "status", "login", "logout", "call", "capabilities", "help", "version"}

# 引数が必須のコマンド
COMMANDS_REQUIRING_ARGS = {"call"}

VALID_OUTPUT_FORMATS = ("text", "json")


@dataclass
class ParsedCommand:
    """解析済みコマンド

    Attributes:
        command: コマンド名
        args: コマンド引数
        options: オプション辞書
        output_format: 出力形式
    """

    command: str
    args: List[str]
    options: Dict[str, Any]
    output_format: str = "text"


@dataclass
class ValidationResult:
    """バリデーション結果

    Attributes:
        is_valid: 有効かどうか
        errors: エラーメッセージのリスト
    """

    is_valid: bool
    errors: List[str]


class ArgumentParser:
    """コマンドライン引数の解析"""

    def parse(self, argv: List[str]) -> ParsedCommand:
        """引数を解析してParsedCommandを返す

        Args:
            argv: コマンドライン引数リスト

        Returns:
            ParsedCommand: 解析結果
        """
        options: Dict[str, Any] = {}
        args: List[str] = []
        command: str = ""
        output_format = "text"

        i = 0
        while i < len(argv):
            arg = argv[i]

            # ヘルプオプション
            if arg in ("-h", "--help"):
                options["help"] = True
                i += 1
                continue

            # バージョンオプション
            if arg in ("-v", "--version"):
                options["version"] = True
                i += 1
                continue

            # 詳細ログオプション
            if arg == "--verbose":
                options["verbose"] = True
                i += 1
                continue

            # フォーマットオプション
            if arg == "--format":
                if i + 1 < len(argv):
                    format_value = argv[i + 1].lower()
                    if format_value in VALID_OUTPUT_FORMATS:
                        output_format = format_value
                    else:
                        options["invalid_format"] = argv[i + 1]
                    i += 2
                    continue
                i += 1
                continue

            # 接続先オプション
            if arg == "--base-url":
                if i + 1 < len(argv) and not argv[i + 1].startswith("-"):
                    options["base_url"] = argv[i + 1]
                    i += 2
                    continue
                i += 1
                continue

            # 公開エンドポイント（認証なし）
            if arg == "--skip-auth":
                options["skip_auth"] = True
                i += 1
                continue

            # コマンドまたは引数
            if not command and not arg.startswith("-"):
                command = arg
            elif not arg.startswith("-"):
                args.append(arg)

            i += 1

        return ParsedCommand(
            command=command,
            args=args,
            options=options,
            output_format=output_format,
        )

    def validate(self, parsed: ParsedCommand) -> ValidationResult:
        """解析結果を検証する

        Args:
            parsed: 解析済みコマンド

        Returns:
            ValidationResult: 検証結果
        """
        errors: List[str] = []

        if parsed.options.get("help") or parsed.options.get("version"):
            return ValidationResult(is_valid=True, errors=[])

        if not parsed.command:
            errors.append("コマンドが指定されていません")
        elif parsed.command not in VALID_COMMANDS:
            errors.append(
                f"Unknown command: '{parsed.command}'. "
                f"Available commands: {', '.join(sorted(VALID_COMMANDS))}"
            )
        elif parsed.command in COMMANDS_REQUIRING_ARGS and not parsed.args:
            errors.append(f"'{parsed.command}' コマンドには引数が必要です")

        if "invalid_format" in parsed.options:
            errors.append(
                f"無効な出力形式です: '{parsed.options['invalid_format']}'。"
                f"有効な値: {VALID_OUTPUT_FORMATS}"
            )

        return ValidationResult(is_valid=len(errors) == 0, errors=errors)
