"""Prompt constants and composition for the combined analysis stream."""

from __future__ import annotations

from typing import Any

from backend.chart_provider import UNKNOWN, ChartSummary, PersonInfo
from backend.holland_engine import Profile

SYSTEM_PROMPT = "你是一位资深的命理与职业规划专家，请根据提供的数据生成分析。"

CHARACTERISTIC_DELIMITER = "、"

USER_PROMPT_TEMPLATE = """请根据以下信息为「{name}」做出综合职业方向分析：

【基本信息】
姓名：{name}
性别：{gender}
出生：{birth}
出生地：{location}

【紫微斗数 / 星盘】
{chart_lines}

【霍兰德测试】
主要类型：{primary_type_name}（{primary_type}）
代码：{holland_code}
得分：{primary_score}
各维度得分：{score_line}
典型特征：{characteristics}
适合环境：{work_environment}

请完成以下内容：
1. 结合星盘信号与霍兰德测试结果，说明两者相互印证或存在差异之处，并给出综合判断。
2. 推荐最适合的职业方向，并说明理由。
3. 推荐 3-5 个适合学习的专业方向，每个方向都要给出具体理由。
4. 给出分阶段的个人发展路径建议。
"""


def _text(value: Any) -> str:
    if value is None:
        return UNKNOWN
    text = str(value).strip()
    return text or UNKNOWN


def _birth_text(subject: PersonInfo) -> str:
    try:
        return (
            f"{int(subject.birth_year)}年{int(subject.birth_month)}月{int(subject.birth_day)}日 "
            f"{int(subject.birth_hour):02d}:{int(subject.birth_minute):02d}"
        )
    except (TypeError, ValueError):
        return UNKNOWN


def compose_prompt(profile: Profile, chart: ChartSummary, subject: PersonInfo) -> str:
    """Build the user-role instruction. Missing values are rendered as "未知"."""
    characteristics = CHARACTERISTIC_DELIMITER.join(profile.description.characteristics) or UNKNOWN
    chart_lines = "\n".join(f"{label}：{_text(value)}" for label, value in chart.prompt_fields())
    score_line = " ".join(f"{t.value}={score}" for t, score in profile.ranking)
    return USER_PROMPT_TEMPLATE.format(
        name=_text(subject.name),
        gender=_text(subject.gender),
        birth=_birth_text(subject),
        location=_text(subject.location),
        chart_lines=chart_lines,
        primary_type_name=_text(profile.primary_name),
        primary_type=profile.primary.value,
        holland_code=profile.code,
        primary_score=profile.primary_score,
        score_line=score_line,
        characteristics=characteristics,
        work_environment=_text(profile.description.work_environment),
    ).strip()
