from django.core.exceptions import PermissionDenied


class Actor:
    """
    The caller of a lifecycle operation: an admin, a school scoped to its
    institution, or a parent scoped to their guardian record.
    """
    ADMIN = 'admin'
    SCHOOL = 'school'
    PARENT = 'parent'

    def __init__(self, role, institution_id=None, guardian_id=None, user=None):
        self.role = role
        self.institution_id = institution_id
        self.guardian_id = guardian_id
        self.user = user
        self.ip_address = None

    @classmethod
    def admin(cls, user=None):
        return cls(cls.ADMIN, user=user)

    @classmethod
    def school(cls, institution_id, user=None):
        return cls(cls.SCHOOL, institution_id=institution_id, user=user)

    @classmethod
    def parent(cls, guardian_id, user=None):
        return cls(cls.PARENT, guardian_id=guardian_id, user=user)

    @classmethod
    def from_user(cls, user):
        if user is None or not user.is_authenticated:
            raise PermissionDenied("Authentication required")

        if user.user_type == cls.ADMIN or user.is_superuser:
            return cls.admin(user)
        if user.user_type == cls.SCHOOL:
            if not user.institution_id:
                raise PermissionDenied("School account is not linked to an institution")
            return cls.school(user.institution_id, user)
        if user.user_type == cls.PARENT:
            guardian = getattr(user, 'guardian_profile', None)
            if guardian is None:
                raise PermissionDenied("Parent account has no guardian profile")
            return cls.parent(guardian.pk, user)
        raise PermissionDenied(f"Unknown user type '{user.user_type}'")

    @property
    def is_admin(self):
        return self.role == self.ADMIN

    @property
    def is_school(self):
        return self.role == self.SCHOOL

    @property
    def is_parent(self):
        return self.role == self.PARENT

    def owns_student(self, student):
        return self.is_parent and student.guardian_id == self.guardian_id

    def can_view_application(self, application):
        if self.is_admin:
            return True
        if self.is_school:
            return application.institution_id == self.institution_id
        return application.guardian_id == self.guardian_id

    def can_review(self, application):
        """Verify/reject documents and approve/reject applications"""
        if self.is_admin:
            return True
        return self.is_school and application.institution_id == self.institution_id

    def can_upload(self, application):
        return self.can_view_application(application)

    def can_pay(self, application):
        if self.is_admin:
            return True
        return self.is_parent and application.guardian_id == self.guardian_id

    def __repr__(self):
        return f"Actor({self.role}, institution={self.institution_id}, guardian={self.guardian_id})"


def require(allowed, message="You are not allowed to perform this action"):
    if not allowed:
        raise PermissionDenied(message)


def is_admin(user):
    return user.is_authenticated and (user.user_type == 'admin' or user.is_superuser)


def is_school(user):
    return user.is_authenticated and user.user_type == 'school'


def is_parent(user):
    return user.is_authenticated and user.user_type == 'parent'


def is_admin_or_school(user):
    return is_admin(user) or is_school(user)
