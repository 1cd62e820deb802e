import unittest

from script_agent.controller import Controller
from script_agent.perception import ScreenContextProvider
from script_agent.popup import PopupReflex, app_close_texts, classify_popup, find_close_button
from tests.fakes import FakeScreen, button, node, tree


def make_reflex(screen):
    return PopupReflex(ScreenContextProvider(screen), Controller(screen, action_delay_s=0))


class DetectTests(unittest.TestCase):
    def setUp(self) -> None:
        self.reflex = make_reflex(FakeScreen({"x": tree()}))

    def test_close_button_is_found(self) -> None:
        root = tree(node("发现新版本"), button("立即更新", row=3), button("以后再说", row=4))
        detection = self.reflex.detect(root)
        self.assertTrue(detection.has_popup)
        self.assertEqual(detection.close_text, "以后再说")
        self.assertEqual(detection.popup_type, "update")

    def test_avoided_buttons_are_never_chosen(self) -> None:
        root = tree(button("立即领取 关闭", row=3))
        self.assertIsNone(find_close_button(root, ("关闭",)))

    def test_single_character_labels_match_exactly(self) -> None:
        root = tree(button("Xbox 专区", row=1), button("×", row=2, rid="close"))
        self.assertEqual(find_close_button(root, ("X", "×")).resource_id, "close")

    def test_title_without_close_button(self) -> None:
        detection = self.reflex.detect(tree(node("领取你的优惠券")))
        self.assertTrue(detection.has_popup)
        self.assertIsNone(detection.close_button)

    def test_plain_screen_has_no_popup(self) -> None:
        self.assertFalse(self.reflex.detect(tree(button("首页", row=8))).has_popup)

    def test_app_specific_texts(self) -> None:
        self.assertIn("暂不开启", app_close_texts("com.xingin.xhs"))
        self.assertEqual(app_close_texts("com.example.app"), ())

    def test_classify_popup(self) -> None:
        self.assertEqual(classify_popup("开启通知权限"), "permission")
        self.assertEqual(classify_popup("每日签到领好礼"), "checkin")
        self.assertEqual(classify_popup("随便看看"), "generic")


class DismissTests(unittest.IsolatedAsyncioTestCase):
    async def test_dismisses_stacked_popups(self) -> None:
        screen = FakeScreen(
            {
                "ad": tree(node("广告"), button("跳过广告", row=2)),
                "notice": tree(node("温馨提示"), button("我知道了", row=3)),
                "main": tree(button("首页", row=8)),
            },
            transitions={("ad", "tap:跳过广告"): "notice", ("notice", "tap:我知道了"): "main"},
        )

        result = await make_reflex(screen).dismiss_all(max_attempts=5, delay_s=0)

        self.assertTrue(result.dismissed)
        self.assertEqual(result.popups_cleared, 2)
        self.assertEqual(screen.tapped, ["跳过广告", "我知道了"])

    async def test_max_attempts_bounds_a_popup_that_never_closes(self) -> None:
        screen = FakeScreen({"stuck": tree(button("关闭", row=3))})

        result = await make_reflex(screen).dismiss_all(max_attempts=3, delay_s=0)

        self.assertEqual(result.popups_cleared, 3)
        self.assertIn("达到最大尝试次数 3", result.details[-1])

    async def test_nothing_to_dismiss(self) -> None:
        screen = FakeScreen({"main": tree(button("首页", row=8))})
        result = await make_reflex(screen).dismiss_all(delay_s=0)
        self.assertFalse(result.dismissed)
        self.assertEqual(screen.taps, [])


if __name__ == "__main__":
    unittest.main()
