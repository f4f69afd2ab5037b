# demo_mcp_run_query.py
# Version: v1
#
# Demo: load an analysis through the MCP-style tasks, run every query of it
# and print the first rows of each result.
#
# Usage (bash):
#
#   export DIQUBE_SERVER_URL=http://localhost:8080/diqube-ui
#   export DIQUBE_TICKET=...   # serialized ticket, if the server requires one
#   python demo_mcp_run_query.py <analysis-id> [version]

import asyncio
import sys
from typing import Any, Dict, Optional

from diqube_client.tools import tasks


async def main(analysis_id: str, version: Optional[int]) -> None:
    print(f"Calling MCP task: load_analysis({analysis_id!r}, {version!r})")
    loaded: Dict[str, Any] = await tasks.load_analysis(analysis_id, version)
    print(loaded["summary"])

    for qube in loaded["data"]["qubes"]:
        print(f"\nQube {qube['name']} (id={qube['id']}, slice={qube['slice_id']})")
        for query in qube["queries"]:
            out = await tasks.run_query(qube["id"], query["id"], max_rows=5)
            print(f"- {query['name']}: {out['summary']}")
            data = out["data"]
            if data["column_names"]:
                print("  columns:", ", ".join(data["column_names"]))
            for row in data["rows"]:
                print("  ", row)

    await tasks._get_client().aclose()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python demo_mcp_run_query.py <analysis-id> [version]")
        sys.exit(2)
    asyncio.run(main(sys.argv[1], int(sys.argv[2]) if len(sys.argv) > 2 else None))
