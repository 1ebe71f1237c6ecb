"""
Spending categories: keyword inference for locally parsed messages and
normalization of free-text categories returned by the generative model.
"""

import logging
from typing import Dict, List

from .models import DEFAULT_CATEGORY

logger = logging.getLogger(__name__)

VALID_CATEGORIES = (
    "식비", "카페", "술/유흥", "교통", "쇼핑", "구독", "의료/건강", "운동",
    "문화/여가", "교육", "주거", "생활", "경조", "배달", "보험", "계좌이체", "기타",
)

# Checked in insertion order; the first keyword hit wins
CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "식비": [
        "푸줏간", "정육", "고기", "삼겹살", "갈비", "한우", "소고기", "돼지고기",
        "초밥", "스시", "사시미", "라멘", "우동", "돈까스", "일식", "이자카야",
        "백소정", "스시로", "쿠라스시",
        "짜장", "짬뽕", "중국집", "중식", "마라탕", "훠궈",
        "한식", "찌개", "탕", "냉면", "비빔밥", "국밥", "설렁탕", "갈비탕",
        "김치찌개", "된장찌개", "부대찌개",
        "치킨", "BBQ", "교촌", "BHC", "굽네", "네네", "푸라닭", "호식이",
        "피자", "도미노", "피자헛", "미스터피자", "파파존스",
        "맥도날드", "버거킹", "KFC", "롯데리아", "맘스터치", "서브웨이",
        "김밥", "분식", "떡볶이", "라면", "국수",
        "편의점", "GS25", "CU", "세븐일레븐", "이마트24", "미니스톱",
        "이마트", "홈플러스", "롯데마트", "코스트코", "트레이더스",
        "마트", "하나로", "농협마트",
    ],
    "카페": [
        "스타벅스", "투썸", "이디야", "커피빈", "탐앤탐스", "할리스",
        "메가커피", "컴포즈", "빽다방", "더벤티", "파스쿠찌",
        "카페", "커피",
        "베이커리", "빵집", "제과", "던킨", "크리스피", "파리바게뜨", "뚜레쥬르",
        "배스킨라빈스", "나뚜루", "하겐다즈", "설빙", "아이스크림", "빙수",
    ],
    "교통": [
        "택시", "카카오T", "타다", "우버",
        "버스", "지하철", "KTX", "SRT", "코레일", "기차",
        "주유소", "SK에너지", "GS칼텍스", "현대오일", "S-OIL", "알뜰주유",
        "하이패스", "톨게이트", "고속도로", "주차", "파킹",
    ],
    "쇼핑": [
        "쿠팡", "11번가", "G마켓", "옥션", "위메프", "티몬",
        "네이버쇼핑", "SSG", "롯데ON", "현대Hmall",
        "무신사", "지그재그", "에이블리", "29CM", "W컨셉",
        "유니클로", "자라", "H&M",
        "올리브영", "롭스", "화장품", "뷰티",
        "다이소", "아트박스", "이케아", "오늘의집",
    ],
    "구독": [
        "넷플릭스", "유튜브", "스포티파이", "멜론", "지니", "플로", "바이브",
        "왓챠", "웨이브", "티빙", "시즌", "쿠팡플레이", "디즈니플러스",
        "애플뮤직", "애플TV", "아마존", "프라임",
        "구독", "정기결제", "자동결제", "멤버십",
    ],
    "의료/건강": [
        "병원", "의원", "클리닉", "치과", "안과", "피부과", "내과", "외과",
        "약국", "약",
    ],
    "운동": ["헬스", "피트니스", "짐", "요가", "필라테스", "PT"],
    "문화/여가": [
        "CGV", "메가박스", "롯데시네마", "영화관", "영화",
        "놀이공원", "에버랜드", "롯데월드", "키자니아",
        "노래방", "PC방", "당구장", "볼링장", "찜질방",
        "여행", "호텔", "펜션", "에어비앤비", "야놀자", "여기어때",
        "티켓", "공연", "뮤지컬", "콘서트", "전시",
    ],
    "교육": [
        "학원", "학습", "교육", "인강", "클래스101", "패스트캠퍼스",
        "책", "서점", "교보문고", "영풍문고", "알라딘", "예스24",
    ],
    "생활": [
        "통신", "SKT", "KT", "LG유플러스", "알뜰폰",
        "전기", "가스", "수도", "관리비", "공과금",
        "미용실", "헤어", "네일", "왁싱",
    ],
    "배달": ["배달의민족", "요기요", "쿠팡이츠", "배민", "위메프오", "땡겨요", "배달"],
    "보험": ["보험", "보험료"],
}

_CATEGORY_KEYWORDS_LOWER = {
    category: [k.lower() for k in keywords]
    for category, keywords in CATEGORY_KEYWORDS.items()
}

# Free-text model categories -> valid categories
CATEGORY_MAPPING: Dict[str, str] = {
    "온라인쇼핑": "쇼핑", "편의점": "식비", "마트": "쇼핑",
    "인터넷쇼핑": "쇼핑", "온라인": "쇼핑",
    "의료": "의료/건강", "건강": "의료/건강", "병원": "의료/건강", "약국": "의료/건강",
    "보험": "보험", "보험료": "보험",
    "문화": "문화/여가", "여가": "문화/여가", "여행": "문화/여가",
    "엔터테인먼트": "문화/여가", "오락": "문화/여가", "레저": "문화/여가",
    "술": "술/유흥", "유흥": "술/유흥", "음주": "술/유흥", "바": "술/유흥", "호프": "술/유흥",
    "대중교통": "교통", "택시": "교통", "주유": "교통",
    "헬스": "운동", "피트니스": "운동", "스포츠": "운동", "체육": "운동",
    "부동산": "주거", "임대": "주거", "월세": "주거", "전세": "주거",
    "공과금": "생활", "통신": "생활",
    "경조사": "경조", "축의금": "경조", "조의금": "경조", "부조": "경조",
    "이체": "계좌이체", "송금": "계좌이체",
    "미분류": "기타", "알수없음": "기타", "불명": "기타",
    "음식": "식비", "식사": "식비",
    "배달음식": "배달", "배민": "배달", "요기요": "배달",
    "커피": "카페", "디저트": "카페",
}


def infer_category(store: str, body: str = "") -> str:
    """Keyword-based category for a store name plus message text."""
    combined = f"{store} {body}".lower()
    for category, keywords in _CATEGORY_KEYWORDS_LOWER.items():
        for keyword in keywords:
            if keyword in combined:
                return category
    return DEFAULT_CATEGORY


def normalize_category(raw: str) -> str:
    """
    Map a model-produced category onto VALID_CATEGORIES.

    exact -> mapping table -> substring vs valid -> substring vs mapping keys -> 기타
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        return DEFAULT_CATEGORY
    if trimmed in VALID_CATEGORIES:
        return trimmed

    mapped = CATEGORY_MAPPING.get(trimmed)
    if mapped:
        return mapped

    for valid in VALID_CATEGORIES:
        if valid in trimmed or trimmed in valid:
            return valid

    lowered = trimmed.lower()
    for key, value in CATEGORY_MAPPING.items():
        if key.lower() in lowered:
            return value

    logger.debug(f"Unknown category '{raw}' normalized to {DEFAULT_CATEGORY}")
    return DEFAULT_CATEGORY
