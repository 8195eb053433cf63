import re
import unittest

from backend.mindmap_types import (
    dangling_edges,
    empty_graph,
    first_mentioned,
    generate_id,
    graph_version,
    node_level,
    sanitize_candidate,
)


class TestMindmapTypes(unittest.TestCase):
    def test_generate_id_shape(self):
        a = generate_id("node")
        b = generate_id("node")
        self.assertRegex(a, r"^node-\d+-[0-9a-f]{9}$")
        self.assertNotEqual(a, b)

    def test_empty_graph(self):
        graph = empty_graph("s1")
        self.assertEqual(graph["nodes"], [])
        self.assertEqual(graph["edges"], [])
        self.assertEqual(graph["metadata"], {"sessionId": "s1", "lastUpdated": None, "version": 0, "totalTranscripts": 0})

    def test_lenient_accessors(self):
        self.assertEqual(graph_version(None), 0)
        self.assertEqual(graph_version({"metadata": {"version": "7"}}), 7)
        self.assertEqual(graph_version({"metadata": {"version": "x"}}), 0)
        self.assertEqual(node_level({"level": "2"}), 2)
        self.assertEqual(node_level({"level": 0}), 1)
        self.assertEqual(node_level({}), 1)
        self.assertEqual(first_mentioned({"metadata": {"firstMentioned": 12}}), 12)
        self.assertEqual(first_mentioned({"metadata": "bad"}), 0)

    def test_sanitize_candidate(self):
        nodes, edges = sanitize_candidate(
            {
                "nodes": [
                    {"id": "node-1", "label": "Budget", "type": "topic", "level": 1},
                    {"id": "node-1", "label": "Duplicate", "level": 1},
                    {"label": "No id", "level": "3", "type": "bullet"},
                    "junk",
                ],
                "edges": [
                    {"id": "edge-1", "from": "node-1", "to": "node-1"},
                    {"id": "edge-1", "from": "node-1", "to": "node-1"},
                    {"from": "node-1", "to": "node-9"},
                    None,
                ],
            }
        )

        self.assertEqual(len(nodes), 2)
        self.assertEqual(nodes[0]["label"], "Budget")
        self.assertTrue(re.match(r"^node-\d+-", nodes[1]["id"]))
        self.assertEqual(nodes[1]["level"], 3)
        self.assertEqual(nodes[1]["type"], "detail")
        self.assertEqual(len(edges), 2)
        self.assertEqual(edges[0]["id"], "edge-1")
        self.assertNotEqual(edges[1]["id"], "edge-1")

        graph = {"nodes": nodes, "edges": edges}
        self.assertEqual(dangling_edges(graph), [])


if __name__ == "__main__":
    unittest.main()
