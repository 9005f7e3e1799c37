from __future__ import annotations

from typing import Any, Dict, List, Optional

from .models import Goal

NEW_STUDENT_NARRATIVE = "No profile data available yet. This appears to be a new student."

_TIER_ORDER = ["reach", "target", "safety", "exploring"]


def _format_grade(grade: Any) -> str:
    g = str(grade).strip().lower()
    if g in ("gap_year", "gap year"):
        return "gap year"
    if g.isdigit():
        return f"{g}th grade"
    if g.endswith("th") and g[:-2].isdigit():
        return f"{g} grade"
    return str(grade)


def _basic_info(profile: Dict[str, Any]) -> str:
    name = profile.get("preferred_name") or profile.get("first_name") or "Student"
    info = str(name)
    if profile.get("grade"):
        info += f", {_format_grade(profile['grade'])}"
    school = profile.get("high_school") or {}
    if school.get("name"):
        info += f" at {school['name']}"
        if school.get("city") and school.get("state"):
            info += f" in {school['city']}, {school['state']}"
    return info


def _gpa_line(profile: Dict[str, Any]) -> Optional[str]:
    academics = profile.get("academics") or {}
    parts = []
    if academics.get("gpa_unweighted"):
        parts.append(f"{academics['gpa_unweighted']} unweighted")
    if academics.get("gpa_weighted"):
        parts.append(f"{academics['gpa_weighted']} weighted")
    if not parts:
        return None
    return "GPA: " + ", ".join(parts)


def _testing_line(profile: Dict[str, Any]) -> Optional[str]:
    testing = profile.get("testing") or {}
    parts = []
    if testing.get("sat_total"):
        sat = f"SAT: {testing['sat_total']}"
        if testing.get("sat_math") and testing.get("sat_reading"):
            sat += f" ({testing['sat_math']}M/{testing['sat_reading']}RW)"
        parts.append(sat)
    if testing.get("act_composite"):
        parts.append(f"ACT: {testing['act_composite']}")
    if testing.get("psat_total"):
        parts.append(f"PSAT: {testing['psat_total']}")
    return ", ".join(parts) if parts else None


def _activities_line(profile: Dict[str, Any]) -> Optional[str]:
    activities = profile.get("activities") or []
    if not activities:
        return None
    ordered = sorted(activities, key=lambda a: 0 if a.get("is_leadership") else 1)
    items = []
    for a in ordered[:5]:
        role = a.get("title") or "Member"
        org = a.get("organization") or "Activity"
        items.append(f"{role} of {org} (leadership)" if a.get("is_leadership") else f"{role}, {org}")
    return "Activities: " + "; ".join(items)


def _awards_line(profile: Dict[str, Any]) -> Optional[str]:
    awards = profile.get("awards") or []
    if not awards:
        return None
    items = [a.get("title", "Award") + (f" ({a['level']})" if a.get("level") else "") for a in awards[:3]]
    return "Awards: " + "; ".join(items)


def _programs_line(profile: Dict[str, Any]) -> Optional[str]:
    programs = profile.get("programs") or []
    if not programs:
        return None
    items = [p.get("name", "Program") + (f" - {p['status']}" if p.get("status") else "") for p in programs[:3]]
    return "Programs: " + "; ".join(items)


def _course_lines(profile: Dict[str, Any]) -> List[str]:
    courses = profile.get("courses") or []
    lines = []
    current = [c["name"] for c in courses if c.get("status") == "in_progress" and c.get("name")]
    planned = [c["name"] for c in courses if c.get("status") == "planned" and c.get("name")]
    if current:
        lines.append("Currently taking: " + ", ".join(current[:5]))
    if planned:
        lines.append("Planning to take: " + ", ".join(planned[:3]))
    return lines


def _schools_line(profile: Dict[str, Any]) -> Optional[str]:
    schools = profile.get("schools") or []
    if not schools:
        return None
    by_tier: Dict[str, List[str]] = {}
    for s in schools:
        by_tier.setdefault(s.get("tier") or "exploring", []).append(s.get("school_name") or "Unknown School")
    parts = [f"{tier}: {', '.join(by_tier[tier][:4])}" for tier in _TIER_ORDER if by_tier.get(tier)]
    return "School list: " + "; ".join(parts) if parts else None


def _goal_lines(goals: List[Goal]) -> List[str]:
    lines = []
    in_progress = [g for g in goals if g.status == "in_progress"]
    if in_progress:
        items = []
        for g in in_progress[:4]:
            item = g.title + (f" ({g.category})" if g.category else "")
            if g.tasks:
                done = sum(1 for t in g.tasks if t.status == "completed")
                item += f" - {done}/{len(g.tasks)} tasks done"
            items.append(item)
        lines.append("Currently working on: " + "; ".join(items))
    planning = [g for g in goals if g.status == "planning"]
    if planning:
        items = [g.title + (f" (target: {g.target_date})" if g.target_date else "") for g in planning[:3]]
        lines.append("Planning to do: " + "; ".join(items))
    completed = [g for g in goals if g.status == "completed"]
    if completed:
        lines.append(f"Completed goals: {len(completed)}")
    return lines


def build_profile_narrative(profile: Optional[Dict[str, Any]], goals: Optional[List[Goal]] = None) -> str:
    """Readable summary of a student's profile, one fact per line, most identifying first."""
    if not profile and not goals:
        return NEW_STUDENT_NARRATIVE
    profile = profile or {}
    lines: List[str] = [_basic_info(profile)]
    for line in (_gpa_line(profile), _testing_line(profile), _activities_line(profile),
                 _awards_line(profile), _programs_line(profile)):
        if line:
            lines.append(line)
    lines.extend(_course_lines(profile))
    schools = _schools_line(profile)
    if schools:
        lines.append(schools)
    lines.extend(_goal_lines(goals or []))
    return "\n".join(lines)
