"""
Command line interface
Run a crawl from the terminal and write the report files
"""

import argparse
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from reconspider import __version__
from reconspider.config import Config, CrawlConfig
from reconspider.errors import ConfigError
from reconspider.models.crawl_result import CrawlMode, Strategy
from reconspider.services.crawler import WebCrawler
from reconspider.services.reporter import ReportWriter, summary_line
from reconspider.services.utils import load_cookie_file, load_wordlist, parse_headers_json, split_list

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_FATAL = 2


class ColorFormatter(logging.Formatter):
    """`[HH:MM:SS] [LEVEL] message` with the level tag coloured"""

    COLORS = {
        logging.DEBUG: Fore.MAGENTA,
        logging.INFO: Fore.CYAN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, '')
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        message = record.getMessage()
        if record.exc_info:
            message += '\n' + self.formatException(record.exc_info)
        return f"[{stamp}] {color}[{record.levelname}]{Style.RESET_ALL} {message}"


def setup_logging(verbose: int = 0, quiet: bool = False, log_file: Optional[str] = None) -> None:
    """Console handler on stderr, plus an optional plain log file"""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    colorama_init()
    root = logging.getLogger('reconspider')
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(ColorFormatter())
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
        root.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='reconspider',
        description='Web reconnaissance crawler: discovers URLs, forms, APIs and sensitive data'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-u', '--url', help='Target URL (required unless set in --config)')
    parser.add_argument('--config', help='JSON config file; flags override its values')

    crawl = parser.add_argument_group('crawl')
    crawl.add_argument('--mode', choices=[m.value for m in CrawlMode], help='Extraction mode (default: static)')
    crawl.add_argument('--strategy', choices=[s.value for s in Strategy], help='Frontier order (default: bfs)')
    crawl.add_argument('--depth', type=int, help=f'Maximum depth (default: {Config.MAX_DEPTH})')
    crawl.add_argument('--max-pages', type=int, help=f'Maximum pages fetched (default: {Config.MAX_PAGES})')
    crawl.add_argument('--workers', type=int, help=f'Fetch workers (default: {Config.MAX_WORKERS})')
    crawl.add_argument('--timeout', type=float, help=f'Per-request timeout in seconds (default: {Config.REQUEST_TIMEOUT})')
    crawl.add_argument('--run-timeout', type=float, help='Stop the whole run after this many seconds')
    crawl.add_argument('--delay', type=float, help=f'Per-host delay in seconds (default: {Config.REQUEST_DELAY})')
    crawl.add_argument('--allow-subdomains', action='store_true', default=None, help='Treat subdomains as in scope')
    crawl.add_argument('--ignore-robots', action='store_true', help='Do not consult robots.txt')
    crawl.add_argument('--sitemap', action='store_true', default=None, help='Seed from sitemap.xml')
    crawl.add_argument('--pattern-cap', type=int, help='Maximum URLs fetched per URL pattern')

    http = parser.add_argument_group('http')
    http.add_argument('--cookie-file', help='Cookie file (name=value; ... or Netscape format)')
    http.add_argument('--headers', help='Extra request headers as a JSON object')
    http.add_argument('--proxy', help='Proxy URL, comma separated for rotation')
    http.add_argument('--user-agent', action='append', help='User-Agent (repeatable or comma separated)')

    browser = parser.add_argument_group('browser')
    browser.add_argument('--chrome-path', help='Chromium/Chrome executable for dynamic rendering')

    fuzz = parser.add_argument_group('fuzzing')
    fuzz.add_argument('--fuzz', action='store_true', default=None, help='Fuzz parameterless endpoints')
    fuzz.add_argument('--fuzz-params', help='Comma separated parameter names to try')
    fuzz.add_argument('--fuzz-dict', help='File with parameter names, one per line')
    fuzz.add_argument('--no-post-fuzz', action='store_true', help='Do not build POST fuzz variants')
    fuzz.add_argument('--submit-forms', action='store_true', default=None,
                      help='Fetch POST form actions and POST fuzz variants')

    output = parser.add_argument_group('output')
    output.add_argument('-o', '--output', help='Report file prefix (default: reports/<scan_id>)')
    output.add_argument('--rules', help='Sensitive rule file merged over the defaults')
    output.add_argument('-v', '--verbose', action='count', default=0, help='-v for info, -vv for debug')
    output.add_argument('-q', '--quiet', action='store_true', help='Errors only')
    output.add_argument('--log-file', help='Also write a debug log to this file')

    return parser


def build_config(args: argparse.Namespace) -> CrawlConfig:
    """
    Layer defaults, the config file and command line flags

    Raises:
        ConfigError: for bad files or values
    """
    config = CrawlConfig.from_file(args.config) if args.config else CrawlConfig()

    user_agents = None
    if args.user_agent:
        user_agents = [ua for value in args.user_agent for ua in split_list(value)]

    fuzz_params = None
    if args.fuzz_params or args.fuzz_dict:
        fuzz_params = list(config.fuzz_params)
        if args.fuzz_params:
            fuzz_params.extend(split_list(args.fuzz_params))
        if args.fuzz_dict:
            fuzz_params.extend(load_wordlist(args.fuzz_dict))
        fuzz_params = list(dict.fromkeys(fuzz_params))

    config.update(
        target_url=args.url,
        mode=args.mode,
        strategy=args.strategy,
        max_depth=args.depth,
        max_pages=args.max_pages,
        workers=args.workers,
        timeout=args.timeout,
        run_timeout=args.run_timeout,
        delay=args.delay,
        allow_subdomains=args.allow_subdomains,
        respect_robots=False if args.ignore_robots else None,
        use_sitemap=args.sitemap,
        pattern_cap=args.pattern_cap,
        cookies=load_cookie_file(args.cookie_file) if args.cookie_file else None,
        headers=parse_headers_json(args.headers) if args.headers else None,
        proxies=split_list(args.proxy) if args.proxy else None,
        user_agents=user_agents,
        chrome_path=args.chrome_path,
        fuzz=True if fuzz_params else args.fuzz,
        fuzz_params=fuzz_params,
        post_fuzz=False if args.no_post_fuzz else None,
        submit_post_forms=args.submit_forms,
        rules_file=args.rules,
        output=args.output,
    )
    return config.validate()


def print_summary(crawler: WebCrawler, quiet: bool = False) -> None:
    if quiet:
        return
    summary = crawler.get_summary()
    color = Fore.GREEN if summary.status == 'completed' else Fore.YELLOW
    print(f"\n{color}[{summary.status.upper()}]{Style.RESET_ALL} {summary.target_url}")
    print(f"  Pages fetched:   {summary.pages_fetched} ({summary.pages_failed} failed)")
    print(f"  URLs discovered: {summary.urls_discovered} ({summary.external_links} external)")
    print(f"  Duration:        {summary.duration:.2f}s")
    print(f"  {summary_line(crawler.get_findings())}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet, args.log_file)

    try:
        config = build_config(args)
        crawler = WebCrawler(config)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG

    prefix = config.output or os.path.join(Config.REPORTS_FOLDER, crawler.scan_id)
    writer = ReportWriter(prefix)
    crawler.writers.append(writer)

    def progress(url, depth, status_code):
        if args.quiet:
            return
        color = Fore.GREEN if status_code and status_code < 400 else Fore.RED
        print(f"{color}[{status_code or 'ERR'}]{Style.RESET_ALL} d={depth} {url}")

    try:
        crawler.crawl(callback=progress)
    except Exception as e:
        logger.exception("Crawl failed: %s", e)
        return EXIT_FATAL

    print_summary(crawler, args.quiet)
    if writer.written and not args.quiet:
        print(f"  Reports:         {prefix}_*")
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
