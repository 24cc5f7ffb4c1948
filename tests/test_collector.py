import json
import random
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import httpx

import gather_verification_ids
from gather_verification_ids import (
    EXIT_BAD_INPUT,
    EXIT_FATAL,
    EXIT_OK,
    ApiClient,
    CheckpointStore,
    CollectionResult,
    Collector,
    CollectorConfig,
    DelayPolicy,
    FetchError,
    Paginator,
    QueryRecord,
    RunState,
)


def query_of(request: httpx.Request) -> str:
    """
    Recovers the plain query from the `*query*` filter.
    """
    return request.url.params.get_list('fq')[0].strip('*')


def single_page_handler(calls: list[str], blocked: frozenset[str] = frozenset()):
    """
    Serves one page of two ids per query; queries in `blocked` always get a 429.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        query: str = query_of(request)
        calls.append(query)
        if query in blocked:
            return httpx.Response(429)
        docs: list[dict] = [{'vri_id': f'{query}-1'}, {'vri_id': f'{query}-2'}]
        return httpx.Response(200, json={'response': {'numFound': 2, 'docs': docs}})

    return handler


class TestCollector(unittest.TestCase):
    """
    Tests the multi-query driving loop and its checkpointing.
    """

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.checkpoint = CheckpointStore(Path(self.tmp.name) / 'progress.json')
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def make_collector(self, handler, *, max_retries: int = 5) -> Collector:
        config = CollectorConfig(rows=20, min_delay_ms=5, max_delay_ms=5, max_retries=max_retries)
        delays = DelayPolicy(5, 5, rng=random.Random(11), sleeper=self.sleeps.append)
        client = httpx.Client(transport=httpx.MockTransport(handler))
        paginator = Paginator(ApiClient(client, config, delays), config, delays)
        return Collector(paginator, self.checkpoint, delays, show_progress=False)

    def test_collects_every_query_and_checkpoints_each(self) -> None:
        """
        Checks results, the saved index, and that pauses fall only between queries.
        """
        calls: list[str] = []
        records: list[QueryRecord] = [QueryRecord('a', '2020'), QueryRecord('b', ''), QueryRecord('c', '')]
        state: RunState = self.make_collector(single_page_handler(calls)).run(records, RunState())
        self.assertEqual(calls, ['a', 'b', 'c'])
        self.assertEqual(state.index, 3)
        self.assertEqual([r.ids for r in state.results], [('a-1', 'a-2'), ('b-1', 'b-2'), ('c-1', 'c-2')])
        self.assertEqual(state.results[0].year, '2020')
        self.assertEqual(self.sleeps, [0.005, 0.005])
        self.assertEqual(self.checkpoint.load(), state)

    def test_rerun_with_complete_checkpoint_makes_no_requests(self) -> None:
        """
        Checks that running again over a finished checkpoint is a no-op with identical results.
        """
        records: list[QueryRecord] = [QueryRecord('a', ''), QueryRecord('b', '')]
        first_calls: list[str] = []
        first: RunState = self.make_collector(single_page_handler(first_calls)).run(records, RunState())

        second_calls: list[str] = []
        second: RunState = self.make_collector(single_page_handler(second_calls)).run(records, self.checkpoint.load())
        self.assertEqual(second_calls, [])
        self.assertEqual(second, first)

    def test_resumes_from_index_and_reuses_lagging_results(self) -> None:
        """
        Checks that checkpointed queries are never re-fetched, even when the index lags the results.
        """
        done = CollectionResult(query='a', year='', ids=('a-9',), found=1, pages=1, num_found=1)
        calls: list[str] = []
        records: list[QueryRecord] = [QueryRecord('a', ''), QueryRecord('b', '')]
        state: RunState = self.make_collector(single_page_handler(calls)).run(records, RunState(index=0, results=[done]))
        self.assertEqual(calls, ['b'])
        self.assertEqual(state.index, 2)
        self.assertEqual(state.results[0], done)
        self.assertEqual(state.results[1].query, 'b')

    def test_repeated_row_keeps_one_entry_per_row(self) -> None:
        """
        Checks that a duplicated csv row is fetched once but still checkpointed as its own entry,
        so the saved index always equals the number of saved results.
        """
        calls: list[str] = []
        records: list[QueryRecord] = [QueryRecord('a', ''), QueryRecord('a', ''), QueryRecord('b', '')]
        state: RunState = self.make_collector(single_page_handler(calls)).run(records, RunState())
        self.assertEqual(calls, ['a', 'b'])
        on_disk: RunState = self.checkpoint.load()
        self.assertEqual(on_disk.index, 3)
        self.assertEqual(len(on_disk.results), 3)
        self.assertEqual([r.query for r in on_disk.results], ['a', 'a', 'b'])
        self.assertEqual(on_disk, state)

    def test_fatal_fetch_keeps_prior_queries_on_disk(self) -> None:
        """
        Checks that a query blocked past its retry ceiling aborts the run after 3 attempts,
        leaving the checkpoint with only the earlier completed query.
        """
        calls: list[str] = []
        records: list[QueryRecord] = [QueryRecord('a', ''), QueryRecord('b', ''), QueryRecord('c', '')]
        collector: Collector = self.make_collector(single_page_handler(calls, frozenset({'b'})), max_retries=2)
        with self.assertRaises(FetchError):
            collector.run(records, RunState())
        self.assertEqual(calls, ['a', 'b', 'b', 'b'])
        on_disk: RunState = self.checkpoint.load()
        self.assertEqual(on_disk.index, 1)
        self.assertEqual([r.query for r in on_disk.results], ['a'])

        ## next run picks up at the failed query without refetching the first one
        retry_calls: list[str] = []
        state: RunState = self.make_collector(single_page_handler(retry_calls)).run(records, on_disk)
        self.assertEqual(retry_calls, ['b', 'c'])
        self.assertEqual(len(state.results), state.index)

    def test_corrupt_checkpoint_restarts_from_first_query(self) -> None:
        self.checkpoint.path.write_text('not json at all', encoding='utf-8')
        calls: list[str] = []
        records: list[QueryRecord] = [QueryRecord('a', ''), QueryRecord('b', '')]
        self.make_collector(single_page_handler(calls)).run(records, self.checkpoint.load())
        self.assertEqual(calls, ['a', 'b'])


class TestMain(unittest.TestCase):
    """
    Tests the entrypoint's exit statuses and output files.
    """

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.dir: Path = Path(self.tmp.name)
        self.csv_path: Path = self.dir / 'queries.csv'
        self.out_dir: Path = self.dir / 'out'

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def argv(self, *extra: str) -> list[str]:
        return [
            '--csv', str(self.csv_path),
            '--output-dir', str(self.out_dir),
            '--min-delay', '0',
            '--max-delay', '0',
            '--no-progress',
            *extra,
        ]  # fmt: skip

    def patched_session(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return mock.patch.object(gather_verification_ids.SessionBootstrap, 'create_session', return_value=client)

    def test_writes_json_and_csv_outputs(self) -> None:
        """
        Checks a full run: ids.json mirrors the results; ids.csv has one quoted row per id, none for empty queries.
        """
        self.csv_path.write_text('query,year\nweight,2020\n"none, really",\n', encoding='utf-8')

        def handler(request: httpx.Request) -> httpx.Response:
            if query_of(request) == 'none, really':
                return httpx.Response(200, json={'response': {'numFound': 0, 'docs': []}})
            return httpx.Response(200, json={'response': {'numFound': 2, 'docs': [{'vri_id': 'x-1'}, {'vri_id': 'x-2'}]}})

        with self.patched_session(handler):
            status: int = gather_verification_ids.main(self.argv())
        self.assertEqual(status, EXIT_OK)

        results: list[dict] = json.loads((self.out_dir / 'ids.json').read_text(encoding='utf-8'))
        self.assertEqual(
            results,
            [
                {'query': 'weight', 'year': '2020', 'ids': ['x-1', 'x-2'], 'found': 2, 'pages': 1, 'numFound': 2},
                {'query': 'none, really', 'year': '', 'ids': [], 'found': 0, 'pages': 0, 'numFound': 0},
            ],
        )
        csv_text: str = (self.out_dir / 'ids.csv').read_text(encoding='utf-8')
        self.assertEqual(csv_text, '"query","year","vri_id"\n"weight","2020","x-1"\n"weight","2020","x-2"\n')
        self.assertTrue((self.out_dir / 'progress.json').exists())

    def test_fatal_error_exits_2_and_keeps_checkpoint(self) -> None:
        self.csv_path.write_text('query\nfine\nbroken\n', encoding='utf-8')

        def handler(request: httpx.Request) -> httpx.Response:
            if query_of(request) == 'broken':
                return httpx.Response(503)
            return httpx.Response(200, json={'response': {'numFound': 1, 'docs': [{'vri_id': 'f-1'}]}})

        with self.patched_session(handler):
            status: int = gather_verification_ids.main(self.argv('--retries', '0'))
        self.assertEqual(status, EXIT_FATAL)
        progress: dict = json.loads((self.out_dir / 'progress.json').read_text(encoding='utf-8'))
        self.assertEqual(progress['index'], 1)
        self.assertFalse((self.out_dir / 'ids.json').exists())

    def test_bad_input_exits_1_without_network(self) -> None:
        """
        Checks missing csv, csv without a query column, and inconsistent delays.
        """
        with mock.patch.object(gather_verification_ids.SessionBootstrap, 'create_session') as create_session:
            self.assertEqual(gather_verification_ids.main(self.argv()), EXIT_BAD_INPUT)
            self.csv_path.write_text('name\nweight\n', encoding='utf-8')
            self.assertEqual(gather_verification_ids.main(self.argv()), EXIT_BAD_INPUT)
            self.csv_path.write_bytes(b'query,year\n\xff\xfe bad,2020\n')
            self.assertEqual(gather_verification_ids.main(self.argv()), EXIT_BAD_INPUT)
            self.csv_path.write_text('query\nweight\n', encoding='utf-8')
            self.assertEqual(
                gather_verification_ids.main(self.argv('--min-delay', '10', '--max-delay', '5')), EXIT_BAD_INPUT
            )
            create_session.assert_not_called()


if __name__ == '__main__':
    unittest.main()
