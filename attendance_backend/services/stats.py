from __future__ import annotations

from datetime import date

from sqlalchemy import case, extract, func, select
from sqlalchemy.orm import Session

from attendance_backend.db.models import Attendance, Student


def monthly_present_series(db: Session, start: date, end: date) -> tuple[list[str], list[int]]:
    """Present percentage per calendar month between ``start`` and ``end`` inclusive."""
    year = extract("year", Attendance.date)
    month = extract("month", Attendance.date)
    rows = db.execute(
        select(
            year,
            month,
            func.sum(case((Attendance.status == "present", 1), else_=0)),
            func.count(Attendance.id),
        )
        .where(Attendance.date.between(start, end))
        .group_by(year, month)
        .order_by(year, month)
    ).all()

    labels: list[str] = []
    series: list[int] = []
    for row_year, row_month, present_count, total_count in rows:
        labels.append(date(int(row_year), int(row_month), 1).strftime("%b %Y"))
        series.append(round(int(present_count or 0) / max(1, int(total_count)) * 100))
    return labels, series


def dashboard_stats(db: Session, start: date | None, end: date | None, threshold: int) -> dict:
    total_students = int(db.scalar(select(func.count(Student.id))) or 0)
    present_today = int(
        db.scalar(
            select(func.count(func.distinct(Attendance.student_id))).where(
                Attendance.date == date.today(),
                Attendance.status == "present",
            )
        )
        or 0
    )
    today_percent = round(present_today / total_students * 100) if total_students else 0

    labels: list[str] = []
    series: list[int] = []
    if start is not None and end is not None:
        labels, series = monthly_present_series(db, start, end)

    present = func.sum(case((Attendance.status == "present", 1), else_=0))
    total = func.count(Attendance.id)
    rows = db.execute(
        select(Student.id, Student.name, Student.roll, Student.course, Student.department, present, total)
        .join(Attendance, Attendance.student_id == Student.id)
        .where(Attendance.date.between(start or date(1970, 1, 1), end or date(2100, 12, 31)))
        .group_by(Student.id, Student.name, Student.roll, Student.course, Student.department)
    ).all()

    short = []
    for student_id, name, roll, course, department, present_count, total_count in rows:
        if not total_count:
            continue
        pct = round(int(present_count or 0) / int(total_count) * 100)
        if pct < threshold:
            short.append(
                {
                    "id": student_id,
                    "name": name,
                    "roll": roll or "",
                    "dept": course or department or "",
                    "pct": pct,
                }
            )
    short.sort(key=lambda item: item["pct"])

    return {
        "total_students": total_students,
        "today_present_percent": today_percent,
        "labels": labels,
        "series": series,
        "short_count": len(short),
        "short": short,
    }
