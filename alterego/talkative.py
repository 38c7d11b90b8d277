"""Probabilistic replies to group messages that do not address the bot."""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from typing import Sequence

log = logging.getLogger(__name__)

NO_OVERRIDE = -1.0
_MENTION = re.compile(r"@\w+")


@dataclass(frozen=True)
class ReplyPattern:
    name: str
    pattern: re.Pattern[str]
    replies: tuple[str, ...]
    probability: float


@dataclass(frozen=True)
class TalkativeDecision:
    should_reply: bool
    reply: str | None = None
    pattern_name: str | None = None


REPLY_PATTERNS: tuple[ReplyPattern, ...] = (
    ReplyPattern(
        name="foo是bar吗？",
        pattern=re.compile(r"是.*?[吗吧嘛][？?]?$"),
        replies=(
            "是的呢～", "当然啦！", "嗯嗯，没错", "应该是吧...", "你说得对！", "确实如此", "是这样的～",
            "不是哦", "好像不是", "可能不是吧...", "不太可能是", "不见得呢～",
            "说不准呢", "看情况吧", "见仁见智", "不知道哦～", "我也不清楚",
        ),
        probability=0.25,
    ),
    ReplyPattern(
        name="有foo吗？",
        pattern=re.compile(r"有.+[吗吧嘛][？?]?$"),
        replies=(
            "有的哦～", "当然有啦！", "应该有吧...", "肯定有的！", "嗯嗯，有的", "当然～",
            "没有哦", "好像没有", "可能没有吧...", "不太可能有",
            "说不准呢", "看情况吧", "不知道哦～", "我也不清楚",
        ),
        probability=0.2,
    ),
    ReplyPattern(
        name="看看foo",
        pattern=re.compile(r"看看.+"),
        replies=("👀 让我康康...", "好的，我看看～", "👁️ 瞧瞧", "🔍 我来看看", "让我瞅瞅", "👁️‍🗨️ 看看看"),
        probability=0.2,
    ),
    ReplyPattern(
        name="是不是foo",
        pattern=re.compile(r"是不是.+$"),
        replies=(
            "应该是的吧", "嗯嗯，是的", "好像是这样", "确实是呢", "没错哦～", "你说得对",
            "不太像吧", "好像不是", "可能不是哦", "不见得呢～", "未必哦",
            "说不准呢", "看情况吧", "见仁见智", "不知道哦～", "我也不清楚",
        ),
        probability=0.25,
    ),
    ReplyPattern(
        name="foo真的假的?",
        pattern=re.compile(r"真的假的[？?]?$"),
        replies=("当然是真的啦！", "假的，骗你的～", "你猜猜看", "半真半假吧", "这个... 保密～"),
        probability=0.3,
    ),
    ReplyPattern(
        name="foo好bar吗？",
        pattern=re.compile(r"好.*?(吗|嘛)[？?]?$"),
        replies=(
            "好呀好呀！", "当然好啦～", "挺好的", "还不错哦", "非常好！", "超级好的～",
            "没那么好", "一般般吧", "不太好", "不怎么样", "有点失望",
            "还行吧", "看情况", "因人而异", "见仁见智", "各有各的好",
        ),
        probability=0.2,
    ),
    ReplyPattern(
        name="为什么",
        pattern=re.compile(r"为什么.+$"),
        replies=("因为... 就是因为！", "这个问题很深奥呢", "🤔 让我想想... 想不出来 😵", "可能是缘分吧", "谁知道呢～", "这就是生活啊"),
        probability=0.15,
    ),
)


class TalkativeResponder:
    """Decides whether an unaddressed message gets a canned reply.

    Patterns are tried in order; each match rolls its own dice. A probability
    override in [0, 1] replaces every pattern's own; -1 keeps the defaults.
    """

    def __init__(
        self,
        *,
        patterns: Sequence[ReplyPattern] = REPLY_PATTERNS,
        probability_override: float = NO_OVERRIDE,
        rng: random.Random | None = None,
    ) -> None:
        self._patterns = tuple(patterns)
        self._override = probability_override
        self._rng = rng or random.Random()

    def probability_for(self, pattern: ReplyPattern) -> float:
        if self._override is not None and self._override != NO_OVERRIDE:
            return self._override
        return pattern.probability

    def decide(self, text: str) -> TalkativeDecision:
        clean_text = _MENTION.sub("", text or "").strip()
        for pattern in self._patterns:
            if not pattern.pattern.search(clean_text):
                continue
            probability = self.probability_for(pattern)
            roll = self._rng.random()
            wanted = roll < probability
            log.info(
                "[Talkative] %s Pattern matched: %s, Random factor: %.3f, Probability: %s",
                "✅" if wanted else "❌",
                pattern.name,
                roll,
                probability,
            )
            if wanted:
                return TalkativeDecision(True, self._rng.choice(pattern.replies), pattern.name)
        return TalkativeDecision(False)

