"""
Zoom Phone Call Pipeline

Zoom Phone の録音 Webhook を受信・中継し、通話音声の取得、
文字起こし、通話ステータス判定までを非同期に処理するシステム
"""

__version__ = "0.1.0"

from call_pipeline.config import Config, ConfigurationError

__all__ = ["Config", "ConfigurationError"]
