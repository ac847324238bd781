# -*- coding: utf-8 -*-
import string
from io import BytesIO
from secrets import choice
from typing import Optional

from django.utils import timezone
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .models import CouponCode

ALPHANUM = string.ascii_uppercase + string.digits

DATE_FMT = "yyyy-mm-dd hh:mm"
HEADERS = ["코드", "상태", "소유 회원", "선물한 회원", "사용시각", "선물시각", "수락시각"]
DATE_COLUMNS = (5, 6, 7)


def generate_unique_codes(n: int, length: int = 8) -> list[str]:
    codes = set()
    while len(codes) < n:
        need = n - len(codes)
        # 배치로 1차 생성 (중복 제거 전)
        batch = {"".join(choice(ALPHANUM) for _ in range(length)) for _ in range(need)}
        # 소프트 삭제된 코드도 unique 라서 all_objects 로 확인
        exists = set(
            CouponCode.all_objects.filter(code__in=batch).values_list("code", flat=True)
        )
        codes.update(batch - exists)
    return list(codes)


def _autosize(ws):
    for col in ws.columns:
        max_len = 0
        letter = get_column_letter(col[0].column)
        for cell in col:
            val = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(val))
        ws.column_dimensions[letter].width = min(max(10, max_len + 2), 40)


def _member_label(member) -> str:
    if member is None:
        return ""
    return f"{member.pk} - {member.name}"


def _excel_datetime(value):
    # openpyxl 은 tz-aware datetime 을 받지 않음
    if value is None:
        return None
    return timezone.localtime(value).replace(tzinfo=None)


def build_codes_xlsx(qs, sheet_name: str = "codes", meta_title: Optional[str] = None):
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name

    # 헤더 스타일
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill("solid", fgColor="4F81BD")
    center = Alignment(horizontal="center", vertical="center")

    ws.append(HEADERS)
    for cell in ws[1]:
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = center

    for code in qs:
        ws.append([
            code.code,
            code.status_text,
            _member_label(code.member),
            _member_label(code.gifted_by_member),
            _excel_datetime(code.used_at),
            _excel_datetime(code.gifted_at),
            _excel_datetime(code.accepted_at),
        ])

    for r in range(2, ws.max_row + 1):
        for c in DATE_COLUMNS:
            cell = ws.cell(row=r, column=c)
            if cell.value:
                cell.number_format = DATE_FMT

    _autosize(ws)

    # 메타 시트(선택)
    if meta_title:
        meta = wb.create_sheet("meta")
        meta.append(["Title", meta_title])
        meta.append(["Exported at", _excel_datetime(timezone.now())])
        meta["B2"].number_format = DATE_FMT
        _autosize(meta)

    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio
