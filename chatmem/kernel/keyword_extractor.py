"""
Heuristic keyword extraction for memory search

Turns a free-text (mostly Chinese) query into a ranked list of search
keywords without a real tokenizer:

1. Pattern stage: question-shape rules contribute whole keyword sets
2. Direct mapping: anchor terms pull in their first two related terms
3. Segmentation: pronouns, known domain words, "noun + filler + noun"
   runs and a capped set of generic 2-4 character runs
4. Merge: dedupe, stable-sort by a priority list, cap at max_keywords

All tables are module-level tuples and never mutated after import, so one
extractor instance can be shared by every request.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol, runtime_checkable


logger = logging.getLogger(__name__)

DEFAULT_MAX_KEYWORDS = 15
MAX_GENERIC_SEGMENTS = 3

_HAN = r"[\u4e00-\u9fa5]"


# (pattern, keywords) - every matching rule contributes its full set, in order
SPECIAL_PATTERNS: tuple[tuple[re.Pattern, tuple[str, ...]], ...] = (
    (
        re.compile(r"(我|自己|个人).*?(介绍|展示|说明|描述)"),
        ("我", "自己", "个人", "介绍", "名字", "信息", "工作", "技能"),
    ),
    (
        re.compile(r"(履历|简历|CV|经历)"),
        ("履历", "简历", "工作", "经验", "技能", "教育", "项目"),
    ),
    (
        re.compile(r"(电脑|配置|MacBook|M3|设备)"),
        ("电脑", "配置", "硬件", "MacBook", "设备", "M3"),
    ),
    (
        re.compile(r"(宠物|狗|猫|皮皮)"),
        ("宠物", "狗", "猫", "动物", "皮皮", "爱好"),
    ),
    (
        re.compile(r"(员工|同事|团队)"),
        ("员工", "工作", "团队", "介绍", "履历"),
    ),
    (
        re.compile(r"(华为|应聘|求职|面试)"),
        ("华为", "应聘", "工作", "职业", "简历", "经验"),
    ),
)

# anchor -> related terms; only the first two related terms are used
ANCHOR_TERMS: tuple[tuple[str, tuple[str, ...]], ...] = (
    # identity
    ("我", ("我", "自己", "个人", "本人", "王大拿", "姓名", "名字", "信息")),
    ("自己", ("自己", "我", "个人", "本人", "信息", "情况", "资料")),
    ("介绍", ("介绍", "展示", "说明", "描述", "个人", "情况", "资料")),
    ("个人", ("个人", "我", "自己", "基本", "信息", "情况", "资料")),
    ("名字", ("名字", "姓名", "称呼", "叫", "王大拿")),
    ("年龄", ("年龄", "岁", "多大", "几岁", "年纪")),
    # devices
    ("电脑", ("电脑", "计算机", "MacBook", "Mac", "笔记本", "设备")),
    ("配置", ("配置", "硬件", "参数", "性能", "电脑")),
    ("内存", ("内存", "RAM", "G", "GB", "128g")),
    ("CPU", ("CPU", "处理器", "M1", "M2", "M3", "max")),
    ("MacBook", ("MacBook", "Mac", "电脑", "笔记本", "设备")),
    ("M3", ("M3", "max", "CPU", "处理器", "性能")),
    # work
    ("工作", ("工作", "职业", "职位", "公司", "应聘", "求职", "面试")),
    ("简历", ("简历", "CV", "履历", "经历", "工作")),
    ("履历", ("履历", "简历", "经历", "工作", "职业", "经验")),
    ("员工", ("员工", "同事", "工作", "团队", "介绍")),
    ("项目", ("项目", "经验", "经历", "工作")),
    ("技能", ("技能", "能力", "专业", "特长", "工作")),
    # interests
    ("喜欢", ("喜欢", "爱好", "兴趣", "偏好")),
    ("宠物", ("宠物", "狗", "猫", "动物", "皮皮")),
    ("狗", ("狗", "宠物", "动物", "皮皮", "金毛")),
    ("皮皮", ("皮皮", "狗", "宠物", "金毛")),
    # lifestyle
    ("家庭", ("家庭", "家人", "婚姻", "伴侣", "妻子")),
    ("地址", ("地址", "住址", "位置", "城市", "家")),
    ("联系", ("联系", "电话", "邮箱", "微信")),
)

IMPORTANT_SINGLE_CHARS = ("我", "你", "他", "她")

IMPORTANT_WORDS = (
    "自己", "个人", "介绍", "履历", "简历", "工作", "项目", "技能", "能力",
    "经验", "经历", "电脑", "配置", "硬件", "设备", "宠物", "动物", "喜欢",
    "爱好", "兴趣", "家庭", "年龄", "名字", "姓名", "同事", "员工", "团队",
    "公司", "职业", "职位", "应聘", "求职", "面试",
)

COMPOUND_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p)
    for p in (
        r"新员工",
        r"介绍.{0,2}自己",
        r"个人.{0,2}信息",
        r"工作.{0,2}经验",
        r"技术.{0,2}能力",
        r"项目.{0,2}经历",
        r"设备.{0,2}配置",
        r"宠物.{0,2}信息",
    )
)

# fragments the generic 2-4 character scan produces but that carry no meaning
SEGMENT_STOPLIST = frozenset(
    (
        "能让", "感觉", "应该", "怎样", "有效", "说清", "清楚", "同时", "又能",
        "要向", "向我", "我的", "的新", "新员", "员工", "工介", "介绍", "绍自",
        "自己", "己我", "我应", "该怎", "样有", "效的", "的说", "楚我", "的履",
        "履历", "历同", "时又", "让他", "他们", "们感", "觉我", "我很", "很牛",
    )
)

PRIORITY_ORDER = (
    "我", "自己", "个人", "介绍", "名字", "王大拿", "履历", "简历", "工作",
    "电脑", "配置", "MacBook", "宠物", "狗", "皮皮",
)
_PRIORITY_RANK = {term: rank for rank, term in enumerate(PRIORITY_ORDER)}

_HAN_RUN = re.compile(f"{_HAN}+")
_GENERIC_SEGMENT = re.compile(f"{_HAN}{{2,4}}")


@runtime_checkable
class KeywordExtractor(Protocol):
    """Anything that can turn a query into ordered search keywords"""

    def extract(self, query: str) -> list[str]: ...


def _dedupe(terms: list[str]) -> list[str]:
    return list(dict.fromkeys(terms))


def segment_words(text: str) -> list[str]:
    """
    Character-level segmentation for text without whitespace

    Args:
        text: Query text

    Returns:
        Deduplicated meaningful words in discovery order
    """
    words: list[str] = [c for c in IMPORTANT_SINGLE_CHARS if c in text]
    words.extend(w for w in IMPORTANT_WORDS if w in text)

    for pattern in COMPOUND_PATTERNS:
        for match in pattern.finditer(text):
            words.extend(_HAN_RUN.findall(match.group(0)))

    generic = [s for s in _GENERIC_SEGMENT.findall(text) if s not in SEGMENT_STOPLIST]
    words.extend(generic[:MAX_GENERIC_SEGMENTS])

    return _dedupe(words)


def prioritize(terms: list[str]) -> list[str]:
    """Stable sort: priority terms first in list order, the rest keep their order"""
    return sorted(terms, key=lambda t: _PRIORITY_RANK.get(t, len(PRIORITY_ORDER)))


class HeuristicKeywordExtractor:
    """
    Default rule-based extractor

    Deterministic and synchronous. An empty result means "no constraint";
    callers treat it as match-everything, not match-nothing.
    """

    def __init__(self, max_keywords: int = DEFAULT_MAX_KEYWORDS) -> None:
        if max_keywords < 1:
            raise ValueError(f"max_keywords must be >= 1, got {max_keywords}")
        self.max_keywords = max_keywords

    def extract(self, query: str) -> list[str]:
        """
        Extract ranked keywords from a query

        Args:
            query: Raw query text

        Returns:
            At most max_keywords unique keywords, highest priority first
        """
        if not query or not query.strip():
            return []

        collected: list[str] = []

        for pattern, keywords in SPECIAL_PATTERNS:
            if pattern.search(query):
                collected.extend(keywords)
                logger.debug(f"Pattern {pattern.pattern!r} matched: {list(keywords)}")

        for anchor, related in ANCHOR_TERMS:
            if anchor in query:
                collected.append(anchor)
                collected.extend(related[:2])

        collected.extend(segment_words(query))

        keywords = prioritize(_dedupe(collected))[: self.max_keywords]
        logger.debug(f"Extracted keywords for {query!r}: {keywords}")
        return keywords


_default_extractor = HeuristicKeywordExtractor()


def extract_keywords(query: str) -> list[str]:
    """Extract keywords with the shared default extractor"""
    return _default_extractor.extract(query)
