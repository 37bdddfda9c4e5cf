"""コマンドラインインターフェース"""

from infoassist_auth.cli.main import AuthCLI
from infoassist_auth.cli.parser import ArgumentParser, ParsedCommand, ValidationResult

__all__ = ["ArgumentParser", "AuthCLI", "ParsedCommand", "ValidationResult"]
