from typing import TypedDict


class Course(TypedDict):
    course_id: str
    name: str
    description: str
    enrollment_count: int


COURSES: tuple[Course, ...] = (
    {"course_id": "CS-404", "name": "Network Security", "description": "Protocol Analysis", "enrollment_count": 42},
    {"course_id": "CS-302", "name": "Algorithms II", "description": "Data Structures", "enrollment_count": 82},
    {"course_id": "ETH-101", "name": "Cyber Ethics", "description": "Legal Frameworks", "enrollment_count": 35},
    {"course_id": "CS-402", "name": "Kernel Arch", "description": "System Design", "enrollment_count": 18},
    {"course_id": "CS-309", "name": "Intro to AI", "description": "Machine Learning Basics", "enrollment_count": 25},
    {"course_id": "CS-410", "name": "Cloud Security", "description": "Securing Cloud Infrastructures", "enrollment_count": 30},
    {"course_id": "CS-305", "name": "Database Systems", "description": "SQL & NoSQL Databases", "enrollment_count": 40},
    {"course_id": "CS-315", "name": "Web Dev", "description": "Full Stack Development", "enrollment_count": 38},
)


def list_courses() -> list[Course]:
    return [dict(c) for c in COURSES]  # type: ignore[misc]


def get_course(course_id: str) -> Course | None:
    wanted = (course_id or "").strip().upper()
    for course in COURSES:
        if course["course_id"] == wanted:
            return dict(course)  # type: ignore[return-value]
    return None
