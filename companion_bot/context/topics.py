from __future__ import annotations

from typing import Iterable

# Canonical keyword tables. Matching is a plain substring test on the
# lower-cased text, so short keywords ("ai", "lol") also match inside words.
TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "tech": (
        "công nghệ",
        "lập trình",
        "phần mềm",
        "ứng dụng",
        "website",
        "web",
        "app",
        "máy tính",
        "điện thoại",
        "smartphone",
        "laptop",
        "pc",
        "android",
        "ios",
        "trí tuệ nhân tạo",
        "ai",
        "machine learning",
        "deep learning",
        "javascript",
        "typescript",
        "python",
        "react",
        "discord",
        "bot",
        "programming",
        "code",
        "coding",
        "github",
        "api",
        "html",
        "css",
        "nodejs",
    ),
    "gaming": (
        "game",
        "chơi game",
        "gaming",
        "trò chơi",
        "game mobile",
        "game online",
        "liên minh huyền thoại",
        "lol",
        "pubg",
        "free fire",
        "valorant",
        "fifa",
        "pes",
        "minecraft",
        "roblox",
        "among us",
        "steam",
        "xbox",
        "playstation",
        "nintendo",
        "switch",
        "ps5",
        "ps4",
    ),
    "interest": (
        "nhạc",
        "âm nhạc",
        "bài hát",
        "ca sĩ",
        "nhạc sĩ",
        "kpop",
        "vpop",
        "phim",
        "phim ảnh",
        "điện ảnh",
        "netflix",
        "youtube",
        "tiktok",
        "sách",
        "đọc sách",
        "tiểu thuyết",
        "truyện",
        "manga",
        "anime",
        "ăn",
        "thức ăn",
        "món ăn",
        "nấu ăn",
        "đồ ăn",
        "quán ăn",
        "nhà hàng",
        "cafe",
        "cà phê",
        "trà",
        "bánh",
        "phở",
        "bún",
        "cơm",
        "du lịch",
        "travel",
        "đi chơi",
        "nghỉ dưỡng",
        "vacation",
        "nghệ thuật",
        "art",
        "vẽ",
        "painting",
        "nhiếp ảnh",
        "photography",
        "thể thao",
        "bóng đá",
        "football",
        "tennis",
        "badminton",
        "cầu lông",
        "gym",
        "tập gym",
        "fitness",
        "yoga",
        "chạy bộ",
        "running",
        "sức khỏe",
    ),
    "emotion": (
        "vui",
        "vui vẻ",
        "hạnh phúc",
        "happy",
        "vui mừng",
        "phấn khích",
        "excited",
        "yêu",
        "thích",
        "love",
        "like",
        "tuyệt vời",
        "amazing",
        "tốt",
        "good",
        "hài lòng",
        "satisfied",
        "thoải mái",
        "comfortable",
        "chill",
        "relax",
        "buồn",
        "sad",
        "khóc",
        "cry",
        "thất vọng",
        "disappointed",
        "tức giận",
        "angry",
        "giận",
        "mad",
        "bực mình",
        "annoyed",
        "lo lắng",
        "worried",
        "anxiety",
        "stress",
        "căng thẳng",
        "nervous",
        "mệt",
        "tired",
        "mệt mỏi",
        "exhausted",
        "chán",
        "bored",
        "bối rối",
        "confused",
        "hoang mang",
        "lost",
        "không hiểu",
    ),
    # Locale-specific daily-life vocabulary (Vietnamese community plus common English loans).
    "vietnamese": (
        "học",
        "học tập",
        "study",
        "trường",
        "school",
        "university",
        "đại học",
        "thi",
        "exam",
        "kiểm tra",
        "test",
        "bài tập",
        "homework",
        "làm việc",
        "work",
        "job",
        "công việc",
        "career",
        "nghề nghiệp",
        "công ty",
        "company",
        "office",
        "văn phòng",
        "meeting",
        "họp",
        "gia đình",
        "family",
        "bạn bè",
        "friends",
        "người yêu",
        "boyfriend",
        "girlfriend",
        "thời tiết",
        "weather",
        "nóng",
        "hot",
        "lạnh",
        "cold",
        "mưa",
        "rain",
        "shopping",
        "mua sắm",
        "tiền",
        "money",
        "giá",
        "price",
    ),
}


def extract_topics(text: str) -> list[str]:
    """Return `<category>:<keyword>` tags found in `text`, in table order."""
    lowered = (text or "").lower()
    if not lowered:
        return []
    topics: list[str] = []
    for category, keywords in TOPIC_KEYWORDS.items():
        for keyword in keywords:
            if keyword in lowered:
                topics.append(f"{category}:{keyword}")
    return topics


def extract_topics_from_history(contents: Iterable[str], *, window: int = 10) -> list[str]:
    seen: dict[str, None] = {}
    items = list(contents)
    for content in items[-window:] if window > 0 else []:
        for topic in extract_topics(content):
            seen.setdefault(topic, None)
    return list(seen)
