"""Deterministic Holland (RIASEC) classification engine.

Scores a fixed 24-item questionnaire into the six Holland categories and derives
the primary type, the three-letter Holland code and the static descriptive tables
shown to the user. Pure functions only; no I/O.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from backend.errors import ValidationError


class HollandType(str, Enum):
    R = "R"
    I = "I"  # noqa: E741
    A = "A"
    S = "S"
    E = "E"
    C = "C"


ANSWER_COUNT = 24

# Four questionnaire items per category, in declaration order.
CATEGORY_INDICES: dict[HollandType, tuple[int, ...]] = {
    HollandType.R: (0, 1, 2, 3),
    HollandType.I: (4, 5, 6, 7),
    HollandType.A: (8, 9, 10, 11),
    HollandType.S: (12, 13, 14, 15),
    HollandType.E: (16, 17, 18, 19),
    HollandType.C: (20, 21, 22, 23),
}


@dataclass(frozen=True)
class MajorRecommendation:
    name: str
    match: int

    def to_payload(self) -> dict[str, Any]:
        return {"name": self.name, "match": self.match}


@dataclass(frozen=True)
class TypeDescription:
    name: str
    characteristics: tuple[str, ...]
    work_environment: str
    development_suggestion: str
    majors: tuple[MajorRecommendation, ...]


TYPE_DESCRIPTIONS: dict[HollandType, TypeDescription] = {
    HollandType.R: TypeDescription(
        name="现实型",
        characteristics=("动手能力强", "务实稳重", "喜欢操作工具和机器", "偏好具体明确的任务"),
        work_environment="技术操作与工程实践环境",
        development_suggestion="在保持动手优势的同时，加强沟通表达与团队协作能力。",
        majors=(
            MajorRecommendation("机械工程", 92),
            MajorRecommendation("土木工程", 88),
            MajorRecommendation("电气工程及其自动化", 86),
        ),
    ),
    HollandType.I: TypeDescription(
        name="研究型",
        characteristics=("善于思考分析", "好奇心强", "喜欢探索抽象问题", "重视逻辑与证据"),
        work_environment="科研与数据分析环境",
        development_suggestion="把研究兴趣转化为可落地的成果，同时练习将复杂问题讲清楚。",
        majors=(
            MajorRecommendation("数学与应用数学", 93),
            MajorRecommendation("计算机科学与技术", 90),
            MajorRecommendation("生物科学", 87),
        ),
    ),
    HollandType.A: TypeDescription(
        name="艺术型",
        characteristics=("富有想象力", "情感丰富", "追求独特表达", "不喜欢刻板规则"),
        work_environment="创意设计与文化传媒环境",
        development_suggestion="建立稳定的作品积累节奏，并学习将创意与商业需求结合。",
        majors=(
            MajorRecommendation("视觉传达设计", 92),
            MajorRecommendation("数字媒体艺术", 89),
            MajorRecommendation("汉语言文学", 85),
        ),
    ),
    HollandType.S: TypeDescription(
        name="社会型",
        characteristics=("乐于助人", "善于沟通", "富有同理心", "重视人际关系"),
        work_environment="教育、医疗与社会服务环境",
        development_suggestion="在关怀他人的同时设立边界，并补充专业技能以提升影响力。",
        majors=(
            MajorRecommendation("教育学", 91),
            MajorRecommendation("心理学", 89),
            MajorRecommendation("护理学", 86),
        ),
    ),
    HollandType.E: TypeDescription(
        name="企业型",
        characteristics=("有领导欲", "敢于冒险", "善于说服他人", "目标导向"),
        work_environment="商业管理与市场经营环境",
        development_suggestion="积累扎实的行业知识，避免只凭冲劲决策，学会倾听团队意见。",
        majors=(
            MajorRecommendation("工商管理", 92),
            MajorRecommendation("市场营销", 89),
            MajorRecommendation("法学", 84),
        ),
    ),
    HollandType.C: TypeDescription(
        name="常规型",
        characteristics=("细心严谨", "遵守规则", "条理清晰", "擅长处理数据与流程"),
        work_environment="财务、行政与流程管理环境",
        development_suggestion="在稳定执行的基础上培养应变能力，主动接触新工具与新方法。",
        majors=(
            MajorRecommendation("会计学", 93),
            MajorRecommendation("财务管理", 90),
            MajorRecommendation("信息管理与信息系统", 85),
        ),
    ),
}

DEFAULT_DESCRIPTION = TypeDescription(
    name="综合型",
    characteristics=(),
    work_environment="多元化工作环境",
    development_suggestion="",
    majors=(),
)


def _check_tables() -> None:
    covered = sorted(idx for indices in CATEGORY_INDICES.values() for idx in indices)
    if covered != list(range(ANSWER_COUNT)):
        raise RuntimeError("Holland category partition must cover every answer index exactly once")
    missing = [t.value for t in HollandType if t not in CATEGORY_INDICES or t not in TYPE_DESCRIPTIONS]
    if missing:
        raise RuntimeError(f"Holland tables missing categories: {missing}")


_check_tables()


@dataclass(frozen=True)
class Profile:
    scores: dict[HollandType, int]
    ranking: tuple[tuple[HollandType, int], ...]
    description: TypeDescription = field(repr=False)

    @property
    def primary(self) -> HollandType:
        return self.ranking[0][0]

    @property
    def primary_score(self) -> int:
        return self.ranking[0][1]

    @property
    def primary_name(self) -> str:
        return self.description.name

    @property
    def code(self) -> str:
        return "".join(t.value for t, _ in self.ranking[:3])

    def to_payload(self) -> dict[str, Any]:
        return {
            "scores": {t.value: score for t, score in self.scores.items()},
            "ranking": [{"type": t.value, "score": score} for t, score in self.ranking],
            "primaryType": self.primary.value,
            "primaryTypeName": self.primary_name,
            "hollandCode": self.code,
            "primaryScore": self.primary_score,
            "characteristics": list(self.description.characteristics),
            "workEnvironment": self.description.work_environment,
            "developmentSuggestion": self.description.development_suggestion,
            "recommendedMajors": [m.to_payload() for m in self.description.majors],
        }


def describe_type(symbol: Any) -> TypeDescription:
    """Look up the descriptive tables for a raw category symbol; unknown symbols get the default."""
    try:
        return TYPE_DESCRIPTIONS[HollandType(str(symbol).strip().upper())]
    except ValueError:
        return DEFAULT_DESCRIPTION


def _coerce_answer(index: int, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"hollandAnswers[{index}] must be a number")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValidationError(f"hollandAnswers[{index}] must be a whole number")
        value = int(value)
    if value < 0:
        raise ValidationError(f"hollandAnswers[{index}] must not be negative")
    return value


def normalize_answers(answers: Any) -> tuple[int, ...]:
    if answers is None:
        raise ValidationError(f"hollandAnswers is required and must contain {ANSWER_COUNT} answers")
    if isinstance(answers, (str, bytes)) or not isinstance(answers, Sequence):
        raise ValidationError(f"hollandAnswers must be an array of {ANSWER_COUNT} numbers")
    if len(answers) != ANSWER_COUNT:
        raise ValidationError(
            f"hollandAnswers must contain exactly {ANSWER_COUNT} answers, got {len(answers)}"
        )
    return tuple(_coerce_answer(idx, value) for idx, value in enumerate(answers))


def score_categories(answers: Sequence[int]) -> dict[HollandType, int]:
    return {t: sum(answers[idx] for idx in CATEGORY_INDICES[t]) for t in HollandType}


def classify(answers: Any) -> Profile:
    """Classify a Holland answer vector.

    Raises ValidationError when the vector does not hold exactly 24 non-negative
    whole numbers. Ties in score keep the R, I, A, S, E, C declaration order
    because Python's sort is stable.
    """
    normalized = normalize_answers(answers)
    scores = score_categories(normalized)
    ranking = tuple(sorted(scores.items(), key=lambda item: item[1], reverse=True))
    return Profile(scores=scores, ranking=ranking, description=describe_type(ranking[0][0].value))
