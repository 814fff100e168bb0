from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from packages.kanthink.workspace import cascade, ordering, permissions, schemas
from packages.kanthink.workspace.models import ChannelShare, FolderShare
from packages.kanthink.workspace.ordering import InFolder, Root
from packages.kanthink.workspace.schema.enums import ChannelRole, ShareRole


def _folder(service, owner, name="Projects"):
    return service.create_folder(schemas.FolderCreateRequest(name=name), owner.id)


def _move(service, user, channel_id, folder_id):
    return service.organize(
        schemas.OrganizationRequest(
            operation="moveChannelToFolder",
            channel_id=channel_id,
            target_folder_id=folder_id,
        ),
        user.id,
    )


def _channel_in(service, owner, folder, name):
    channel = service.create_channel(schemas.ChannelCreateRequest(name=name), owner.id)
    _move(service, owner, channel.id, folder.id)
    return channel


def _share_folder(service, folder, owner, email, role):
    return service.share_folder(
        folder.id, schemas.ShareCreateRequest(email=email, role=role), owner.id
    )


def _shares(service, channel_id):
    return list(
        service.session.execute(
            select(ChannelShare)
            .where(ChannelShare.channel_id == channel_id)
            .order_by(ChannelShare.invited_at)
        ).scalars()
    )


def test_folder_share_cascades_to_every_channel(service, make_user):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    folder = _folder(service, alice)
    first = _channel_in(service, alice, folder, "First")
    second = _channel_in(service, alice, folder, "Second")

    grant, result = _share_folder(service, folder, alice, "bob@example.com", ShareRole.EDITOR)
    _, pending = _share_folder(service, folder, alice, "carol@example.com", ShareRole.VIEWER)

    assert result.status == "ok"
    assert len(result.created) == 2
    assert len(pending.created) == 2

    for channel in (first, second):
        bob_share, carol_share = _shares(service, channel.id)
        assert bob_share.user_id == bob.id
        assert bob_share.role is ShareRole.EDITOR
        assert bob_share.folder_share_id == grant.id
        assert not bob_share.is_pending
        assert carol_share.user_id is None
        assert carol_share.email == "carol@example.com"
        assert carol_share.is_pending

    assert ordering.ordered_ids(service.session, Root(bob.id)) == [first.id, second.id]

    carol = make_user("carol@example.com")
    permission = permissions.resolve_channel_role(service.session, first.id, carol.id)
    assert permission.role is ChannelRole.VIEWER
    assert ordering.ordered_ids(service.session, Root(carol.id)) == [first.id, second.id]


def test_attach_creates_grants_for_existing_folder_shares(service, make_user):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    folder = _folder(service, alice)
    _share_folder(service, folder, alice, "bob@example.com", ShareRole.VIEWER)

    channel = service.create_channel(schemas.ChannelCreateRequest(name="Late"), alice.id)
    payload = _move(service, alice, channel.id, folder.id)

    assert payload["success"] is True
    assert payload["cascade"]["status"] == "ok"
    assert len(payload["cascade"]["created"]) == 1
    (share,) = _shares(service, channel.id)
    assert share.user_id == bob.id
    assert share.is_derived


def test_detach_leaves_direct_and_other_folder_grants(service, make_user):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    dave = make_user("dave@example.com")
    projects = _folder(service, alice, "Projects")
    archive = _folder(service, alice, "Archive")
    channel = _channel_in(service, alice, projects, "Board")
    other = _channel_in(service, alice, archive, "Old board")
    service.share_channel(
        channel.id, schemas.ShareCreateRequest(email="dave@example.com"), alice.id
    )
    _share_folder(service, projects, alice, "bob@example.com", ShareRole.EDITOR)
    _share_folder(service, archive, alice, "bob@example.com", ShareRole.VIEWER)

    payload = _move(service, alice, channel.id, None)

    assert payload["cascade"]["status"] == "ok"
    assert len(payload["cascade"]["removed"]) == 1
    remaining = _shares(service, channel.id)
    assert [share.user_id for share in remaining] == [dave.id]
    assert not remaining[0].is_derived
    assert [share.user_id for share in _shares(service, other.id)] == [bob.id]

    root = ordering.ordered_rows(service.session, Root(bob.id))
    assert [entry.channel_id for entry in root] == [other.id]
    assert [entry.position for entry in root] == [0]
    assert ordering.ordered_ids(service.session, Root(alice.id)) == [channel.id]


def test_existing_direct_grant_is_not_duplicated(service, make_user):
    alice = make_user("alice@example.com")
    make_user("bob@example.com")
    folder = _folder(service, alice)
    channel = _channel_in(service, alice, folder, "Board")
    direct = service.share_channel(
        channel.id,
        schemas.ShareCreateRequest(email="bob@example.com", role=ShareRole.VIEWER),
        alice.id,
    )

    grant, result = _share_folder(service, folder, alice, "bob@example.com", ShareRole.EDITOR)

    assert result.created == []
    assert result.skipped == [grant.id]
    (share,) = _shares(service, channel.id)
    assert share.id == direct.id
    assert share.role is ShareRole.VIEWER


def test_channels_of_other_owners_are_skipped(service, make_user):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    make_user("eve@example.com")
    alices = service.create_channel(schemas.ChannelCreateRequest(name="Alice's"), alice.id)
    service.share_channel(
        alices.id,
        schemas.ShareCreateRequest(email="bob@example.com", role=ShareRole.EDITOR),
        alice.id,
    )
    folder = _folder(service, bob, "Bob's folder")
    grant, _ = _share_folder(service, folder, bob, "eve@example.com", ShareRole.EDITOR)

    payload = _move(service, bob, alices.id, folder.id)

    assert payload["cascade"]["skipped"] == [grant.id]
    assert payload["cascade"]["created"] == []
    assert [share.user_id for share in _shares(service, alices.id)] == [bob.id]
    assert ordering.ordered_ids(service.session, InFolder(bob.id, folder.id)) == [alices.id]


def test_role_change_and_revoke_follow_derived_grants(service, make_user):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    folder = _folder(service, alice)
    first = _channel_in(service, alice, folder, "First")
    second = _channel_in(service, alice, folder, "Second")
    grant, _ = _share_folder(service, folder, alice, "bob@example.com", ShareRole.VIEWER)

    service.update_folder_share(
        folder.id, grant.id, schemas.ShareUpdateRequest(role=ShareRole.EDITOR), alice.id
    )
    assert {share.role for share in _shares(service, first.id) + _shares(service, second.id)} == {
        ShareRole.EDITOR
    }

    result = service.revoke_folder_share(folder.id, grant.id, alice.id)

    assert result.status == "ok"
    assert len(result.removed) == 2
    assert _shares(service, first.id) == []
    assert _shares(service, second.id) == []
    assert service.session.get(FolderShare, grant.id) is None
    assert ordering.ordered_ids(service.session, Root(bob.id)) == []


def test_failing_grant_is_reported_as_partial(service, make_user, monkeypatch):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    folder = _folder(service, alice)
    broken = _channel_in(service, alice, folder, "Broken")
    healthy = _channel_in(service, alice, folder, "Healthy")

    real_derive = cascade._derive

    def flaky_derive(session, channel, grant, actor_id):
        if channel.id == broken.id:
            raise SQLAlchemyError("simulated write failure")
        return real_derive(session, channel, grant, actor_id)

    monkeypatch.setattr(cascade, "_derive", flaky_derive)

    grant, result = _share_folder(service, folder, alice, "bob@example.com", ShareRole.EDITOR)

    assert result.status == "partial"
    assert len(result.created) == 1
    (failure,) = result.failures
    assert failure.channel_id == broken.id
    assert failure.folder_share_id == grant.id
    assert "simulated write failure" in failure.error
    assert result.as_dict()["failures"][0]["channel_id"] == broken.id

    assert service.session.get(FolderShare, grant.id) is not None
    assert _shares(service, broken.id) == []
    assert [share.user_id for share in _shares(service, healthy.id)] == [bob.id]


def test_failing_move_reports_the_folder(service, make_user, monkeypatch):
    alice = make_user("alice@example.com")
    make_user("bob@example.com")
    folder = _folder(service, alice)
    _share_folder(service, folder, alice, "bob@example.com", ShareRole.VIEWER)
    channel = service.create_channel(schemas.ChannelCreateRequest(name="Moving"), alice.id)

    def failing_attach(session, channel_id, folder_id, actor_id=None):
        raise SQLAlchemyError("simulated attach failure")

    monkeypatch.setattr(cascade, "attach_channel", failing_attach)

    payload = _move(service, alice, channel.id, folder.id)

    (failure,) = payload["cascade"]["failures"]
    assert payload["cascade"]["status"] == "partial"
    assert failure["folder_id"] == folder.id
    assert failure["folder_share_id"] is None
    assert failure["channel_id"] == channel.id
    assert "simulated attach failure" in failure["error"]
    assert ordering.ordered_ids(service.session, InFolder(alice.id, folder.id)) == [channel.id]
    assert _shares(service, channel.id) == []


def test_delete_folder_returns_channels_to_root_and_revokes(service, make_user):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    loose = service.create_channel(schemas.ChannelCreateRequest(name="Loose"), alice.id)
    folder = _folder(service, alice)
    first = _channel_in(service, alice, folder, "First")
    second = _channel_in(service, alice, folder, "Second")
    _share_folder(service, folder, alice, "bob@example.com", ShareRole.EDITOR)

    result = service.delete_folder(folder.id, alice.id)

    assert result.status == "ok"
    assert len(result.removed) == 2
    assert ordering.ordered_ids(service.session, Root(alice.id)) == [
        loose.id,
        first.id,
        second.id,
    ]
    assert _shares(service, first.id) == []
    assert ordering.ordered_ids(service.session, Root(bob.id)) == []
    layout, root = service.get_layout(alice.id)
    assert layout == []
    assert root == [loose.id, first.id, second.id]
