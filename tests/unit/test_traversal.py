"""
Unit tests for graph traversal.

Tests cover:
- BFS traversal depth limits and directions
- Path recording
- ACL gating of start node, links and neighbors
- Post-filter fallback when ACL ids exceed the inline cap
- Shortest path search
"""

import logging
import tempfile

import pytest

from dbaas.gruff_server.errors import (
    AccessDeniedError,
    NoPathFoundError,
    NotFoundError,
    ValidationError,
)
from dbaas.gruff_server.graph.traversal import Direction, GraphTraversal, PathStep
from dbaas.gruff_server.query.filters import PropertyFilter
from dbaas.gruff_server.store.acl import AclEntry
from dbaas.gruff_server.store.canonical_store import GraphStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def store(data_dir):
    """Create initialized store."""
    store = GraphStore(f"{data_dir}/graph.db", wal_mode=False)
    await store.initialize()
    return store


@pytest.fixture
def hop_counter(store):
    """Count fetch_neighbors calls on the store."""
    calls = []
    original = store.fetch_neighbors

    async def counting(entity_id, direction, **kwargs):
        calls.append((entity_id, direction))
        return await original(entity_id, direction, **kwargs)

    store.fetch_neighbors = counting
    return calls


async def make_chain(store, count, type_id="node"):
    """Create entities e0 -> e1 -> ... with increasing created_at."""
    entities = []
    for i in range(count):
        entities.append(
            await store.create_entity(type_id, {"i": i}, entity_id=f"e{i}", created_at=i + 1)
        )
    for i in range(count - 1):
        await store.create_link(
            "next", entities[i].id, entities[i + 1].id, link_id=f"l{i}", created_at=100 + i
        )
    return entities


class TestTraverse:
    """Tests for GraphTraversal.traverse."""

    @pytest.mark.asyncio
    async def test_depth_zero_returns_start_only(self, store, hop_counter):
        """max_depth=0 returns the start entity without querying neighbors."""
        await make_chain(store, 3)
        result = await GraphTraversal(store).traverse("e0", max_depth=0)

        assert result.entity_ids == ["e0"]
        assert hop_counter == []

    @pytest.mark.asyncio
    async def test_depth_limit(self, store):
        """Nodes beyond max_depth are not reached."""
        await make_chain(store, 5)
        result = await GraphTraversal(store).traverse("e0", max_depth=2)

        assert result.entity_ids == ["e0", "e1", "e2"]
        assert [t.depth for t in result.entities] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_ceiling_nodes_not_expanded(self, store, hop_counter):
        """Nodes at max_depth are returned but never expanded."""
        await make_chain(store, 5)
        await GraphTraversal(store).traverse("e0", max_depth=2)
        assert [entity_id for entity_id, _ in hop_counter] == ["e0", "e1"]

    @pytest.mark.asyncio
    async def test_inbound(self, store):
        """Inbound traversal follows links backwards."""
        await make_chain(store, 4)
        result = await GraphTraversal(store).traverse("e3", direction="inbound", max_depth=10)
        assert result.entity_ids == ["e3", "e2", "e1", "e0"]

    @pytest.mark.asyncio
    async def test_both_directions(self, store, hop_counter):
        """Both runs an outbound and an inbound hop per node."""
        await make_chain(store, 3)
        result = await GraphTraversal(store).traverse("e1", direction=Direction.BOTH, max_depth=1)

        assert set(result.entity_ids) == {"e0", "e1", "e2"}
        assert hop_counter == [("e1", "outbound"), ("e1", "inbound")]

    @pytest.mark.asyncio
    async def test_start_resolves_to_latest(self, store):
        """An old version id starts from the latest version."""
        await make_chain(store, 2)
        latest = await store.update_entity("e0", {"i": 99})

        result = await GraphTraversal(store).traverse("e0", max_depth=1)
        assert result.start_id == latest.id
        assert result.entities[0].entity.properties == {"i": 99}
        assert result.entity_ids[1] == "e1"

    @pytest.mark.asyncio
    async def test_paths(self, store):
        """return_paths records every distinct path to a node."""
        a = await store.create_entity("node", {}, entity_id="a", created_at=1)
        b = await store.create_entity("node", {}, entity_id="b", created_at=2)
        c = await store.create_entity("node", {}, entity_id="c", created_at=3)
        d = await store.create_entity("node", {}, entity_id="d", created_at=4)
        await store.create_link("x", a.id, b.id, link_id="ab", created_at=10)
        await store.create_link("x", a.id, c.id, link_id="ac", created_at=11)
        await store.create_link("x", b.id, d.id, link_id="bd", created_at=12)
        await store.create_link("x", c.id, d.id, link_id="cd", created_at=13)

        traversal = GraphTraversal(store)
        with_paths = await traversal.traverse("a", max_depth=2, return_paths=True)
        by_id = {t.entity.id: t for t in with_paths.entities}

        assert by_id["a"].paths == [()]
        assert by_id["d"].paths == [
            (PathStep("ab", "b"), PathStep("bd", "d")),
            (PathStep("ac", "c"), PathStep("cd", "d")),
        ]
        assert with_paths.to_dict()["entities"][3]["paths"][1][1] == {
            "link_id": "cd",
            "entity_id": "d",
        }

        first_only = await traversal.traverse("a", max_depth=2)
        assert len({t.entity.id: t for t in first_only.entities}["d"].paths) == 1
        assert "paths" not in first_only.to_dict()["entities"][0]

    @pytest.mark.asyncio
    async def test_link_and_entity_type_filters(self, store):
        """Type filters restrict links crossed and entities reached."""
        a = await store.create_entity("person", {}, entity_id="a")
        b = await store.create_entity("person", {}, entity_id="b")
        c = await store.create_entity("company", {}, entity_id="c")
        await store.create_link("knows", a.id, b.id)
        await store.create_link("works_at", a.id, c.id)

        traversal = GraphTraversal(store)
        by_link = await traversal.traverse("a", max_depth=1, link_type_ids=["works_at"])
        assert by_link.entity_ids == ["a", "c"]

        by_entity = await traversal.traverse("a", max_depth=1, entity_type_ids=["person"])
        assert by_entity.entity_ids == ["a", "b"]

    @pytest.mark.asyncio
    async def test_property_filters(self, store):
        """Entity and link filters apply per hop."""
        a = await store.create_entity("node", {}, entity_id="a")
        b = await store.create_entity("node", {"age": 40}, entity_id="b")
        c = await store.create_entity("node", {"age": 10}, entity_id="c")
        await store.create_link("x", a.id, b.id, {"weight": 1})
        await store.create_link("x", a.id, c.id, {"weight": 5})

        traversal = GraphTraversal(store)
        adults = await traversal.traverse(
            "a", max_depth=1, entity_filter=PropertyFilter("age", "gte", 18)
        )
        assert adults.entity_ids == ["a", "b"]

        heavy = await traversal.traverse(
            "a", max_depth=1, link_filter=PropertyFilter("weight", "gt", 2)
        )
        assert heavy.entity_ids == ["a", "c"]

    @pytest.mark.asyncio
    async def test_deleted_skipped(self, store):
        """Deleted links and entities are not traversed by default."""
        await make_chain(store, 3)
        await store.delete_link("l1")

        traversal = GraphTraversal(store)
        assert (await traversal.traverse("e0", max_depth=5)).entity_ids == ["e0", "e1"]
        with_deleted = await traversal.traverse("e0", max_depth=5, include_deleted=True)
        assert with_deleted.entity_ids == ["e0", "e1", "e2"]

    @pytest.mark.asyncio
    async def test_start_not_found(self, store):
        """Missing start raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await GraphTraversal(store).traverse("missing")

    @pytest.mark.asyncio
    async def test_deleted_start_not_found(self, store):
        """A deleted start is NotFound unless deleted rows are included."""
        await make_chain(store, 2)
        await store.delete_entity("e0")

        traversal = GraphTraversal(store)
        with pytest.raises(NotFoundError):
            await traversal.traverse("e0")
        result = await traversal.traverse("e0", include_deleted=True, max_depth=0)
        assert result.entities[0].entity.is_deleted

    @pytest.mark.asyncio
    @pytest.mark.parametrize("depth", [-1, 11, True, "2"])
    async def test_invalid_depth(self, store, depth):
        """max_depth must be an integer between 0 and 10."""
        await make_chain(store, 1)
        with pytest.raises(ValidationError):
            await GraphTraversal(store).traverse("e0", max_depth=depth)

    @pytest.mark.asyncio
    async def test_invalid_direction(self, store):
        """Unknown direction raises ValidationError."""
        await make_chain(store, 1)
        with pytest.raises(ValidationError):
            await GraphTraversal(store).traverse("e0", direction="sideways")

    @pytest.mark.asyncio
    async def test_default_depth(self, store):
        """Configured default depth applies when none is given."""
        await make_chain(store, 6)
        result = await GraphTraversal(store, default_depth=3).traverse("e0")
        assert result.entity_ids == ["e0", "e1", "e2", "e3"]


class TestTraverseAcl:
    """Tests for ACL enforcement during traversal."""

    @pytest.fixture
    async def graph(self, store):
        """A(public) --L1(public)--> B(private to alice)."""
        acl_id = await store.get_or_create_acl([AclEntry("user", "alice", "read")])
        a = await store.create_entity("node", {}, entity_id="A")
        b = await store.create_entity("node", {}, entity_id="B", acl_id=acl_id)
        await store.create_link("x", a.id, b.id, link_id="L1")
        return acl_id

    @pytest.mark.asyncio
    async def test_unauthenticated_sees_public_only(self, store, graph):
        """Unauthenticated traversal stops at private neighbors."""
        result = await GraphTraversal(store).traverse("A", direction="both", max_depth=2)
        assert result.entity_ids == ["A"]

    @pytest.mark.asyncio
    async def test_reader_sees_private(self, store, graph):
        """A principal with read on the ACL reaches the private neighbor."""
        result = await GraphTraversal(store).traverse(
            "A", user_id="alice", direction="both", max_depth=2
        )
        assert result.entity_ids == ["A", "B"]

    @pytest.mark.asyncio
    async def test_other_user_blocked(self, store, graph):
        """A principal without a grant sees public rows only."""
        result = await GraphTraversal(store).traverse("A", user_id="bob", max_depth=2)
        assert result.entity_ids == ["A"]

    @pytest.mark.asyncio
    async def test_group_grant(self, store, graph):
        """Group membership grants access during traversal."""
        group = await store.create_group("readers")
        await store.add_group_member(group.id, "user", "carol")
        acl_id = await store.get_or_create_acl([AclEntry("group", group.id, "write")])
        await store.set_entity_acl("B", acl_id)

        result = await GraphTraversal(store).traverse("A", user_id="carol", max_depth=1)
        assert len(result.entity_ids) == 2

    @pytest.mark.asyncio
    async def test_private_link_blocks(self, store):
        """A private link blocks a public neighbor for unauthorized callers."""
        acl_id = await store.get_or_create_acl([AclEntry("user", "alice", "read")])
        a = await store.create_entity("node", {}, entity_id="A")
        b = await store.create_entity("node", {}, entity_id="B")
        await store.create_link("x", a.id, b.id, acl_id=acl_id)

        traversal = GraphTraversal(store)
        assert (await traversal.traverse("A", max_depth=1)).entity_ids == ["A"]
        assert (await traversal.traverse("A", user_id="alice", max_depth=1)).entity_ids == [
            "A",
            "B",
        ]

    @pytest.mark.asyncio
    async def test_private_start(self, store, graph):
        """Unreadable start raises AccessDeniedError."""
        traversal = GraphTraversal(store)
        with pytest.raises(AccessDeniedError):
            await traversal.traverse("B")
        with pytest.raises(AccessDeniedError):
            await traversal.traverse("B", user_id="bob")
        result = await traversal.traverse("B", user_id="alice", direction="inbound", max_depth=1)
        assert result.entity_ids == ["B", "A"]

    @pytest.mark.asyncio
    async def test_post_filter_fallback(self, store):
        """Above the inline cap, rows are post-filtered with the same outcome."""
        alice_acl = await store.get_or_create_acl([AclEntry("user", "alice", "read")])
        other_acl = await store.get_or_create_acl([AclEntry("user", "bob", "read")])
        shared_acl = await store.get_or_create_acl(
            [AclEntry("user", "alice", "read"), AclEntry("user", "bob", "read")]
        )
        a = await store.create_entity("node", {}, entity_id="A", created_at=1)
        b = await store.create_entity("node", {}, entity_id="B", acl_id=alice_acl, created_at=2)
        c = await store.create_entity("node", {}, entity_id="C", acl_id=other_acl, created_at=3)
        d = await store.create_entity("node", {}, entity_id="D", created_at=4)
        await store.create_link("x", a.id, b.id, created_at=10)
        await store.create_link("x", a.id, c.id, created_at=11)
        await store.create_link("x", a.id, d.id, acl_id=shared_acl, created_at=12)

        traversal = GraphTraversal(store, max_in_clause_ids=1)
        result = await traversal.traverse("A", user_id="alice", max_depth=1)
        assert result.entity_ids == ["A", "B", "D"]


class TestShortestPath:
    """Tests for GraphTraversal.shortest_path."""

    @pytest.mark.asyncio
    async def test_same_node(self, store, hop_counter):
        """from == to returns a zero-length path without neighbor queries."""
        await make_chain(store, 2)
        result = await GraphTraversal(store).shortest_path("e0", "e0")

        assert result.length == 0
        assert [hop.entity.id for hop in result.path] == ["e0"]
        assert result.path[0].link is None
        assert hop_counter == []

    @pytest.mark.asyncio
    async def test_same_node_logs_result(self, store, caplog):
        """from == to still emits the path-found log record."""
        await make_chain(store, 1)
        caplog.set_level(logging.INFO, logger="dbaas.gruff_server.graph.traversal")

        await GraphTraversal(store).shortest_path("e0", "e0")

        records = [r for r in caplog.records if r.getMessage() == "Shortest path found"]
        assert len(records) == 1
        assert records[0].length == 0
        assert records[0].visited == 1

    @pytest.mark.asyncio
    async def test_missing_link_on_materialize(self, store):
        """A link that vanishes before the path is built raises NotFoundError."""
        await make_chain(store, 3)

        async def no_link(link_id):
            return None

        store.get_link = no_link
        with pytest.raises(NotFoundError) as exc_info:
            await GraphTraversal(store).shortest_path("e0", "e2")
        assert exc_info.value.resource_type == "link"
        assert exc_info.value.resource_id == "l0"

    @pytest.mark.asyncio
    async def test_chain_path(self, store):
        """Path follows outbound links with full records per hop."""
        await make_chain(store, 4)
        result = await GraphTraversal(store).shortest_path("e0", "e3")

        assert result.length == 3
        assert [hop.entity.id for hop in result.path] == ["e0", "e1", "e2", "e3"]
        assert [hop.link.id for hop in result.path[1:]] == ["l0", "l1", "l2"]
        assert result.path[2].entity.properties == {"i": 2}
        assert result.to_dict()["length"] == 3

    @pytest.mark.asyncio
    async def test_minimum_hops(self, store):
        """The fewest-hop path wins over a longer one."""
        await make_chain(store, 4)
        await store.create_link("next", "e0", "e3", link_id="shortcut", created_at=500)

        result = await GraphTraversal(store).shortest_path("e0", "e3")
        assert result.length == 1
        assert result.path[1].link.id == "shortcut"

    @pytest.mark.asyncio
    async def test_outbound_only(self, store):
        """Links are only followed source to target."""
        await make_chain(store, 3)
        with pytest.raises(NoPathFoundError):
            await GraphTraversal(store).shortest_path("e2", "e0")

    @pytest.mark.asyncio
    async def test_depth_limit(self, store):
        """Targets farther than max_depth are not found."""
        await make_chain(store, 4)
        traversal = GraphTraversal(store)
        with pytest.raises(NoPathFoundError) as exc_info:
            await traversal.shortest_path("e0", "e3", max_depth=2)
        assert exc_info.value.code == "NO_PATH_FOUND"
        assert exc_info.value.max_depth == 2

        assert (await traversal.shortest_path("e0", "e3", max_depth=3)).length == 3

    @pytest.mark.asyncio
    async def test_link_type_filter(self, store):
        """Only links of the requested types are crossed."""
        await make_chain(store, 3)
        await store.create_link("jump", "e0", "e2", link_id="jump")
        traversal = GraphTraversal(store)

        assert (await traversal.shortest_path("e0", "e2")).length == 1
        assert (await traversal.shortest_path("e0", "e2", link_type_ids=["next"])).length == 2

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, store):
        """Missing endpoints raise NotFoundError."""
        await make_chain(store, 1)
        traversal = GraphTraversal(store)
        with pytest.raises(NotFoundError):
            await traversal.shortest_path("e0", "missing")
        with pytest.raises(NotFoundError):
            await traversal.shortest_path("missing", "e0")

    @pytest.mark.asyncio
    async def test_acl_blocks_path(self, store):
        """A private intermediate node hides the path from other callers."""
        await make_chain(store, 3)
        acl_id = await store.get_or_create_acl([AclEntry("user", "alice", "read")])
        await store.set_entity_acl("e1", acl_id)

        traversal = GraphTraversal(store)
        with pytest.raises(NoPathFoundError):
            await traversal.shortest_path("e0", "e2")
        assert (await traversal.shortest_path("e0", "e2", user_id="alice")).length == 2

    @pytest.mark.asyncio
    async def test_private_target_denied(self, store):
        """An unreadable target is Forbidden, not NotFound."""
        await make_chain(store, 2)
        acl_id = await store.get_or_create_acl([AclEntry("user", "alice", "read")])
        await store.set_entity_acl("e1", acl_id)

        with pytest.raises(AccessDeniedError):
            await GraphTraversal(store).shortest_path("e0", "e1", user_id="bob")
