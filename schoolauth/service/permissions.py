from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping, Optional


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    SCHOOL_ADMIN = "school_admin"
    ACADEMIC_ADMIN = "academic_admin"
    EXAM_ADMIN = "exam_admin"
    FINANCE_ADMIN = "finance_admin"
    STUDENT_AFFAIRS_ADMIN = "student_affairs_admin"
    IT_ADMIN = "it_admin"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"


class Department(str, Enum):
    ACADEMIC = "academic"
    EXAMINATION = "examination"
    FINANCE = "finance"
    STUDENT_AFFAIRS = "student_affairs"
    IT = "it"
    GENERAL = "general"


class Permission(str, Enum):
    ALL = "*"
    # academic
    MANAGE_CURRICULUM = "manage_curriculum"
    ASSIGN_TEACHERS = "assign_teachers"
    VIEW_STUDENT_PROGRESS = "view_student_progress"
    MANAGE_SUBJECTS = "manage_subjects"
    APPROVE_GRADES = "approve_grades"
    # examination
    CREATE_EXAM = "create_exam"
    EDIT_EXAM = "edit_exam"
    DELETE_EXAM = "delete_exam"
    VIEW_EXAM_RESULTS = "view_exam_results"
    MANAGE_EXAM_SCHEDULE = "manage_exam_schedule"
    GENERATE_EXAM_REPORTS = "generate_exam_reports"
    # finance
    VIEW_FINANCIAL_REPORTS = "view_financial_reports"
    MANAGE_FEES = "manage_fees"
    PROCESS_PAYMENTS = "process_payments"
    GENERATE_FINANCIAL_REPORTS = "generate_financial_reports"
    # student affairs
    MANAGE_STUDENT_RECORDS = "manage_student_records"
    HANDLE_DISCIPLINARY = "handle_disciplinary"
    MANAGE_ADMISSIONS = "manage_admissions"
    COORDINATE_EVENTS = "coordinate_events"
    # it
    MANAGE_SYSTEM = "manage_system"
    VIEW_LOGS = "view_logs"
    MANAGE_USERS = "manage_users"
    CONFIGURE_SETTINGS = "configure_settings"
    # self-service
    VIEW_DASHBOARD = "view_dashboard"
    MANAGE_PROFILE = "manage_profile"
    VIEW_REPORTS = "view_reports"


P = Permission

ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = {
    Role.SUPER_ADMIN: frozenset({P.ALL}),
    Role.SCHOOL_ADMIN: frozenset(
        {
            P.MANAGE_CURRICULUM,
            P.ASSIGN_TEACHERS,
            P.VIEW_STUDENT_PROGRESS,
            P.CREATE_EXAM,
            P.EDIT_EXAM,
            P.VIEW_EXAM_RESULTS,
            P.VIEW_FINANCIAL_REPORTS,
            P.MANAGE_FEES,
            P.MANAGE_STUDENT_RECORDS,
            P.HANDLE_DISCIPLINARY,
            P.MANAGE_SYSTEM,
            P.VIEW_LOGS,
            P.MANAGE_USERS,
        }
    ),
    Role.ACADEMIC_ADMIN: frozenset(
        {
            P.MANAGE_CURRICULUM,
            P.ASSIGN_TEACHERS,
            P.VIEW_STUDENT_PROGRESS,
            P.MANAGE_SUBJECTS,
            P.APPROVE_GRADES,
            P.MANAGE_STUDENT_RECORDS,
        }
    ),
    Role.EXAM_ADMIN: frozenset(
        {
            P.CREATE_EXAM,
            P.EDIT_EXAM,
            P.DELETE_EXAM,
            P.VIEW_EXAM_RESULTS,
            P.MANAGE_EXAM_SCHEDULE,
            P.GENERATE_EXAM_REPORTS,
            P.VIEW_DASHBOARD,
            P.VIEW_REPORTS,
            P.VIEW_STUDENT_PROGRESS,
        }
    ),
    Role.FINANCE_ADMIN: frozenset(
        {
            P.VIEW_FINANCIAL_REPORTS,
            P.MANAGE_FEES,
            P.PROCESS_PAYMENTS,
            P.GENERATE_FINANCIAL_REPORTS,
        }
    ),
    Role.STUDENT_AFFAIRS_ADMIN: frozenset(
        {
            P.MANAGE_STUDENT_RECORDS,
            P.HANDLE_DISCIPLINARY,
            P.MANAGE_ADMISSIONS,
            P.COORDINATE_EVENTS,
        }
    ),
    Role.IT_ADMIN: frozenset(
        {P.MANAGE_SYSTEM, P.VIEW_LOGS, P.MANAGE_USERS, P.CONFIGURE_SETTINGS}
    ),
    Role.TEACHER: frozenset(
        {P.VIEW_STUDENT_PROGRESS, P.MANAGE_SUBJECTS, P.APPROVE_GRADES}
    ),
    Role.STUDENT: frozenset({P.VIEW_DASHBOARD, P.MANAGE_PROFILE}),
    Role.PARENT: frozenset({P.VIEW_DASHBOARD, P.MANAGE_PROFILE}),
}

# Roles whose department is implied by the role name
DEPARTMENT_ADMIN_ROLES: Mapping[Role, Department] = {
    Role.ACADEMIC_ADMIN: Department.ACADEMIC,
    Role.EXAM_ADMIN: Department.EXAMINATION,
    Role.FINANCE_ADMIN: Department.FINANCE,
    Role.STUDENT_AFFAIRS_ADMIN: Department.STUDENT_AFFAIRS,
    Role.IT_ADMIN: Department.IT,
}

STAFF_ROLES: frozenset[Role] = frozenset(
    {
        Role.TEACHER,
        Role.SUPER_ADMIN,
        Role.SCHOOL_ADMIN,
        Role.ACADEMIC_ADMIN,
        Role.EXAM_ADMIN,
        Role.FINANCE_ADMIN,
        Role.STUDENT_AFFAIRS_ADMIN,
        Role.IT_ADMIN,
    }
)


def parse_role(value: Optional[str]) -> Optional[Role]:
    if value is None:
        return None
    try:
        return Role(value)
    except ValueError:
        return None


def parse_department(value: Optional[str]) -> Optional[Department]:
    if value is None:
        return None
    try:
        return Department(value)
    except ValueError:
        return None


def default_permissions(role: Role) -> list[str]:
    """Permission strings granted to a new account of ``role``."""
    return sorted(p.value for p in ROLE_PERMISSIONS.get(role, frozenset()))


def default_department(role: Role, requested: Optional[Department] = None) -> Department:
    """Departmental admins are pinned to their department; others keep the request."""
    if role in DEPARTMENT_ADMIN_ROLES:
        return DEPARTMENT_ADMIN_ROLES[role]
    return requested or Department.GENERAL


def _as_permissions(values: Iterable[str]) -> set[Permission]:
    granted: set[Permission] = set()
    for value in values:
        try:
            granted.add(Permission(value))
        except ValueError:
            continue
    return granted


def has_permission(role: str, permissions: Iterable[str], required: Permission) -> bool:
    """Return True when the principal holds ``required``.

    super_admin and holders of ``*`` pass every check; unknown permission
    strings stored on a user never match anything.
    """
    if role == Role.SUPER_ADMIN.value:
        return True
    granted = _as_permissions(permissions)
    return Permission.ALL in granted or required in granted


def has_any_permission(
    role: str, permissions: Iterable[str], required: Iterable[Permission]
) -> bool:
    granted = list(permissions)
    return any(has_permission(role, granted, p) for p in required)


def can_access_department(role: str, department: str) -> bool:
    parsed = parse_role(role)
    if parsed in (Role.SUPER_ADMIN, Role.SCHOOL_ADMIN):
        return True
    if parsed in DEPARTMENT_ADMIN_ROLES:
        return DEPARTMENT_ADMIN_ROLES[parsed].value == department
    return False


__all__ = [
    "Role",
    "Department",
    "Permission",
    "ROLE_PERMISSIONS",
    "DEPARTMENT_ADMIN_ROLES",
    "STAFF_ROLES",
    "parse_role",
    "parse_department",
    "default_permissions",
    "default_department",
    "has_permission",
    "has_any_permission",
    "can_access_department",
]
