"""
Tests for the role permission table and request guards
"""
import pytest

from models import db, User, UserRole
from permissions import Action, allowed_actions, has_permission, check_permission


class TestRolePermissions:

    def test_admin_has_every_action(self):
        for action in Action:
            assert has_permission(UserRole.ADMIN, action), action

    def test_operator_actions(self):
        assert allowed_actions(UserRole.OPERATOR) == {
            Action.CREATE, Action.READ, Action.UPDATE, Action.VOID, Action.EXPORT
        }

    @pytest.mark.parametrize('action', [Action.UPLOAD, Action.MANAGE_USERS])
    def test_operator_denied(self, action):
        assert not has_permission(UserRole.OPERATOR, action)

    def test_role_given_as_string(self):
        assert has_permission('admin', 'manage_users')
        assert has_permission('operator', 'void')
        assert not has_permission('operator', 'upload')

    def test_unknown_role_has_nothing(self):
        assert allowed_actions('auditor') == frozenset()
        for action in Action:
            assert not has_permission('auditor', action)

    def test_unknown_action_denied(self):
        assert not has_permission(UserRole.ADMIN, 'delete_everything')


class TestCheckPermission:

    def test_no_user(self):
        assert not check_permission(None, Action.READ)

    def test_inactive_user_denied(self, test_app):
        user = User(username='gone', password_hash='x', display_name='離職員工',
                    role=UserRole.ADMIN, active=False)
        db.session.add(user)
        db.session.commit()

        assert not check_permission(user, Action.READ)

    def test_active_operator(self, operator_user):
        assert check_permission(operator_user, Action.EXPORT)
        assert not check_permission(operator_user, Action.UPLOAD)
