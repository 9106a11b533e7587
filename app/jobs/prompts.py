"""Analysis prompts sent to the engine, keyed by media kind and item count."""

from app.jobs.models import MediaKind

_SECTIONS = """1. **动作识别**: 识别{subject}中的运动类型和具体动作
2. **体态评估**: 分析身体姿势、对齐和平衡
3. **技术要点**: 指出动作的关键技术要素
4. **问题识别**: 发现可能的体态问题或动作错误
5. **改进建议**: 提供具体的改进建议和训练要点
6. **安全提醒**: 指出需要注意的安全事项"""

_CLOSING = "请用中文回答，并提供结构化的分析报告。"

_SINGLE_IMAGE_FOCUS = "请针对这张图片进行详细的单帧分析，重点关注当前姿态的准确性和改进空间。"

_COMPARISON_FOCUS = """这是{count}张图片对比分析，请：
- 比较不同图片中的动作差异
- 分析动作的进步或退步
- 提供连续性的改进建议
- 指出动作序列中的关键变化点"""

MAX_IMAGES = 3


def build_prompt(media_kind: MediaKind, item_count: int = 1) -> str:
    """Build the posture-analysis prompt for a video or a set of 1-3 images."""
    if media_kind == MediaKind.VIDEO:
        return "\n\n".join([
            "请分析这个运动视频中的体态和动作。请提供详细的分析报告，包括：",
            _SECTIONS.format(subject="视频"),
            _CLOSING,
        ])

    if item_count < 1 or item_count > MAX_IMAGES:
        raise ValueError(f"Image analysis supports 1 to {MAX_IMAGES} images, got {item_count}")

    if item_count == 1:
        intro = "请分析这张运动图片中的体态和动作。请提供详细的分析报告，包括："
        focus = _SINGLE_IMAGE_FOCUS
    else:
        intro = f"请分析这{item_count}张运动图片中的体态和动作。请提供详细的分析报告，包括："
        focus = _COMPARISON_FOCUS.format(count=item_count)

    return "\n\n".join([intro, _SECTIONS.format(subject="图片"), focus, _CLOSING])
