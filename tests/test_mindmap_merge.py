import unittest

from backend.mindmap_merge import merge_delta
from backend.mindmap_types import dangling_edges, empty_graph


def _graph(nodes, edges=None, version=3):
    g = empty_graph("s1")
    g["nodes"] = nodes
    g["edges"] = edges or []
    g["metadata"]["version"] = version
    return g


class TestMindmapMerge(unittest.TestCase):
    def test_similar_node_folds_into_existing(self):
        existing = _graph(
            [{"id": "n1", "label": "Budget", "type": "topic", "level": 1, "metadata": {"transcriptIndices": [0]}}]
        )
        delta = {"nodes": [{"id": "n2", "label": "Q4 Budget", "level": 1, "metadata": {"transcriptIndices": [4]}}]}

        merged = merge_delta(existing, delta)

        self.assertEqual(len(merged["nodes"]), 1)
        node = merged["nodes"][0]
        self.assertEqual(node["id"], "n1")
        self.assertEqual(node["label"], "Budget")
        self.assertEqual(node["metadata"]["transcriptIndices"], [0, 4])
        self.assertEqual(merged["metadata"]["version"], 4)

    def test_does_not_mutate_inputs(self):
        existing = _graph([{"id": "n1", "label": "Budget", "level": 1, "metadata": {"transcriptIndices": [0]}}])
        delta = {"nodes": [{"id": "n2", "label": "Budget", "metadata": {"transcriptIndices": [1]}}]}

        merge_delta(existing, delta)

        self.assertEqual(existing["nodes"][0]["metadata"]["transcriptIndices"], [0])
        self.assertEqual(existing["metadata"]["version"], 3)

    def test_empty_delta_only_moves_version_and_timestamp(self):
        existing = _graph(
            [{"id": "n1", "label": "Budget", "level": 1}, {"id": "n2", "label": "Hiring", "level": 1}],
            [{"id": "e1", "from": "n1", "to": "n2"}],
        )

        merged = merge_delta(existing, {"nodes": [], "edges": []})

        self.assertEqual(merged["nodes"], existing["nodes"])
        self.assertEqual(merged["edges"], existing["edges"])
        self.assertEqual(merged["metadata"]["version"], 4)
        self.assertIsNotNone(merged["metadata"]["lastUpdated"])

    def test_new_nodes_are_appended_with_unique_ids(self):
        existing = _graph([{"id": "n1", "label": "Budget", "level": 1}])
        delta = {
            "nodes": [
                {"id": "n1", "label": "Hiring", "level": 1},
                {"label": "Roadmap", "level": 1},
            ]
        }

        merged = merge_delta(existing, delta)

        ids = [n["id"] for n in merged["nodes"]]
        self.assertEqual(len(ids), 3)
        self.assertEqual(len(set(ids)), 3)
        self.assertTrue(all(ids))

    def test_duplicate_edge_pairs_are_skipped(self):
        existing = _graph(
            [{"id": "n1", "label": "Budget", "level": 1}, {"id": "n2", "label": "Hiring", "level": 2}],
            [{"id": "e1", "from": "n1", "to": "n2"}],
        )
        delta = {"edges": [{"id": "e9", "from": "n1", "to": "n2"}, {"from": "n2", "to": "n1"}]}

        merged = merge_delta(existing, delta)

        pairs = [(e["from"], e["to"]) for e in merged["edges"]]
        self.assertEqual(pairs, [("n1", "n2"), ("n2", "n1")])
        self.assertTrue(merged["edges"][1]["id"])

    def test_edges_follow_merged_node_aliases(self):
        existing = _graph([{"id": "n1", "label": "Budget", "level": 1}])
        delta = {
            "nodes": [
                {"id": "d1", "label": "Budget", "level": 1},
                {"id": "d2", "label": "Travel costs", "level": 2},
            ],
            "edges": [{"id": "de1", "from": "d1", "to": "d2"}],
        }

        merged = merge_delta(existing, delta)

        self.assertEqual(len(merged["nodes"]), 2)
        self.assertEqual(len(merged["edges"]), 1)
        self.assertEqual(merged["edges"][0]["from"], "n1")
        self.assertEqual(merged["edges"][0]["to"], "d2")

    def test_no_dangling_edges_after_merge(self):
        existing = _graph([{"id": "n1", "label": "Budget", "level": 1}])
        delta = {
            "nodes": [{"id": "d2", "label": "Hiring", "level": 1}],
            "edges": [
                {"from": "n1", "to": "d2"},
                {"from": "n1", "to": "missing"},
                {"from": "ghost", "to": "d2"},
            ],
        }

        merged = merge_delta(existing, delta)

        self.assertEqual(dangling_edges(merged), [])
        self.assertEqual(len(merged["edges"]), 1)

    def test_merge_into_empty_graph(self):
        merged = merge_delta(empty_graph("s1"), {"nodes": [{"id": "a", "label": "Budget"}]})
        self.assertEqual([n["id"] for n in merged["nodes"]], ["a"])
        self.assertEqual(merged["metadata"]["version"], 1)
        self.assertEqual(merged["metadata"]["sessionId"], "s1")


if __name__ == "__main__":
    unittest.main()
