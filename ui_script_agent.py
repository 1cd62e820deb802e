import argparse
import asyncio
import json
import logging
import sys

from openai import AsyncOpenAI

from script_agent import AgentConfig, ExecutionMode, OpenAIChatModel, ScriptEngine, ScriptStore
from script_agent.browser import open_browser
from script_agent.config import DEFAULT_APP_PACKAGES
from script_agent.errors import ScriptAgentError
from script_agent.storage import script_to_dict
from script_agent.synthesizer import ScriptSynthesizer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ui-script-agent", description="自适应 UI 脚本引擎")
    parser.add_argument("--env-file", default=None, help=".env 文件路径")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="根据目标生成脚本")
    gen.add_argument("goal")

    run = sub.add_parser("run", help="执行脚本")
    run.add_argument("script_id")
    run.add_argument("--mode", choices=[m.value.lower() for m in ExecutionMode], default=None)
    run.add_argument("--auto-improve", action="store_true", help="失败时自动改进并重新执行")

    improve = sub.add_parser("improve", help="手动改进脚本")
    improve.add_argument("script_id")
    improve.add_argument("--step", type=int, default=None, help="失败步骤序号（从 1 开始）")
    improve.add_argument("--error", default=None)

    sub.add_parser("list", help="列出脚本")
    show = sub.add_parser("show", help="查看脚本")
    show.add_argument("script_id")
    delete = sub.add_parser("delete", help="删除脚本")
    delete.add_argument("script_id")
    return parser


def print_progress(current: int, total: int, description: str):
    print(f"[{current}/{total}] {description}")


async def run_command(args, config: AgentConfig) -> int:
    store = ScriptStore(config.scripts_dir)

    if args.command == "list":
        for script in store.list():
            print(f"{script.id}  v{script.version}  ✓{script.success_count} ❌{script.fail_count}  {script.name}")
        return 0
    if args.command == "show":
        print(json.dumps(script_to_dict(store.load(args.script_id)), ensure_ascii=False, indent=2))
        return 0
    if args.command == "delete":
        print("已删除" if store.delete(args.script_id) else "脚本不存在")
        return 0

    client = AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)
    model = OpenAIChatModel(client, config.model)
    app_urls = dict(config.app_urls)

    if args.command == "generate":
        script = await ScriptSynthesizer(model, store).synthesize(args.goal)
        print(f"✓ 已生成 {script.id}: {script.name}")
        for step in script.steps:
            print(f"  {step.index}. [{step.type.value}] {step.description}")
        return 0

    async with open_browser(app_urls, headless=config.headless) as screen:
        engine = ScriptEngine(screen, model, store, config)
        if args.command == "improve":
            failed = args.step - 1 if args.step else None
            script = await engine.improve(args.script_id, failed, args.error)
            if script is None:
                print("❌ 改进失败")
                return 1
            print(f"✓ 已改进为 v{script.version}")
            return 0

        mode = ExecutionMode.from_name(args.mode) if args.mode else None
        if args.auto_improve:
            result = await engine.execute_with_auto_improve(args.script_id, mode, on_progress=print_progress)
        else:
            result = await engine.execute(args.script_id, mode, on_progress=print_progress)

    print("\n" + "=" * 60)
    if result.success:
        print(f"✓ 执行成功 ({result.steps_executed}/{result.total_steps})")
    else:
        print(f"❌ 执行失败: {result.error}")
    print(f"弹窗清理 {result.popups_dismissed_count} 次，AI 介入 {result.ai_intervention_count} 次")
    if result.extracted_data:
        print(json.dumps(result.extracted_data, ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = AgentConfig.from_env(args.env_file)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not config.app_urls:
        logging.getLogger(__name__).info(
            "未配置 SCRIPT_AGENT_APPS，已知应用: %s", ", ".join(DEFAULT_APP_PACKAGES.values()))
    try:
        return asyncio.run(run_command(args, config))
    except ScriptAgentError as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
