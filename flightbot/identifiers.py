"""
FlightBot - 識別子の整形と判定

責務:
  - 利用者入力から記号・空白を取り除く
  - 便名（UA400）と機体記号（N300DG, JA31MC）の判定
  - 通信やAPI使用量には一切関与しない
"""
import re
from typing import Optional

from models import FLIGHT_NUMBER, TAIL_NUMBER

# 航空会社コード2〜3文字 + 便番号1〜4桁 + 任意の接尾英字
_FLIGHT_NUMBER_PATTERN = re.compile(r'^[A-Z]{2,3}[0-9]{1,4}[A-Z]?$', re.IGNORECASE)

# 国際形式（国籍記号1文字 + 英数字）と米国形式（N + 数字 + 英字0〜2文字）
_TAIL_NUMBER_PATTERNS = (
    re.compile(r'^[A-Z]-?[A-Z0-9]{1,5}$', re.IGNORECASE),
    re.compile(r'^N[0-9]{1,5}[A-Z]{0,2}$', re.IGNORECASE),
)

_NON_ALNUM = re.compile(r'[^A-Z0-9]', re.IGNORECASE)

MIN_IDENTIFIER_LENGTH = 2


def clean_identifier(identifier: str) -> str:
    """英数字以外をすべて取り除く。"""
    if not identifier:
        return ""
    return _NON_ALNUM.sub('', identifier)


def is_flight_number(identifier: str) -> bool:
    return bool(_FLIGHT_NUMBER_PATTERN.match(identifier or ""))


def is_tail_number(identifier: str) -> bool:
    return any(p.match(identifier or "") for p in _TAIL_NUMBER_PATTERNS)


def classify_identifier(identifier: str) -> Optional[str]:
    """
    整形済み識別子の検索種別を返す。どちらにも一致しなければNone。

    "UA400" は国際形式の機体記号パターンにも一致するため、
    便名の判定を先に行う。
    """
    if is_flight_number(identifier):
        return FLIGHT_NUMBER
    if is_tail_number(identifier):
        return TAIL_NUMBER
    return None


def is_tail_search(identifier: Optional[str]) -> bool:
    """利用者の入力（未整形）が機体記号による検索か"""
    if not identifier:
        return False
    return classify_identifier(clean_identifier(identifier)) == TAIL_NUMBER
