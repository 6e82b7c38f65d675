"""
业务配置接口 - 支持可替换的业务配置

新门店可以实现自己的业务配置，替换默认配置。
"""
from abc import ABC, abstractmethod
from typing import List, Dict, Any


class BusinessConfig(ABC):
    """业务配置抽象基类"""

    @abstractmethod
    def get_services(self) -> List[Dict[str, Any]]:
        """获取服务目录种子数据"""
        pass

    @abstractmethod
    def get_package_types(self) -> List[Dict[str, Any]]:
        """获取套餐类型种子数据（含包含的服务）"""
        pass

    @abstractmethod
    def get_revenue_colors(self) -> Dict[str, str]:
        """获取收入图表的固定颜色表（名称 -> 颜色）"""
        pass

    @abstractmethod
    def get_fallback_palette(self) -> List[str]:
        """获取颜色表未命中时使用的调色板"""
        pass

    @abstractmethod
    def get_pet_images(self) -> Dict[str, str]:
        """获取按物种区分的宠物占位图片"""
        pass

    @abstractmethod
    def get_reason_templates(self) -> Dict[str, str]:
        """获取行动队列原因文案模板"""
        pass

    def get_unknown_package_label(self) -> str:
        """套餐类型缺失时的显示名称"""
        return "Unknown Package"


class GroomingStoreConfig(BusinessConfig):
    """宠物美容门店业务配置"""

    def get_services(self) -> List[Dict[str, Any]]:
        return [
            {"name": "Banho & Tosa", "base_price": 90.0, "duration": 90},
            {"name": "Tosa Higiênica", "base_price": 50.0, "duration": 40},
            {"name": "Corte de Unhas", "base_price": 20.0, "duration": 15},
            {"name": "Hidratação", "base_price": 45.0, "duration": 30},
            {"name": "Limpeza de Ouvidos", "base_price": 20.0, "duration": 15},
        ]

    def get_package_types(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": "Pacote Básico",
                "validity_days": 30,
                "total_uses": 4,
                "price": 300.0,
                "max_pets": 1,
                "services": [
                    {"name": "Banho & Tosa", "included_uses": 4, "unit_price": 75.0},
                ],
            },
            {
                "name": "Pacote Completo",
                "validity_days": 60,
                "total_uses": 10,
                "price": 650.0,
                "max_pets": 2,
                "services": [
                    {"name": "Banho & Tosa", "included_uses": 6, "unit_price": 70.0},
                    {"name": "Hidratação", "included_uses": 2, "unit_price": 60.0},
                    {"name": "Corte de Unhas", "included_uses": 2, "unit_price": 55.0},
                ],
            },
        ]

    def get_revenue_colors(self) -> Dict[str, str]:
        return {
            "Banho & Tosa": "blue",
            "Tosa Higiênica": "green",
            "Corte de Unhas": "purple",
            "Hidratação": "orange",
            "Pacote Básico": "blue",
            "Pacote Premium": "purple",
            "Pacote Completo": "green",
            "Pacote Teste": "orange",
        }

    def get_fallback_palette(self) -> List[str]:
        return ["blue", "green", "orange", "purple", "red", "yellow", "pink", "gray"]

    def get_pet_images(self) -> Dict[str, str]:
        return {
            "dog": "https://images.unsplash.com/photo-1552053831-71594a27632d?ixlib=rb-4.0.3&auto=format&fit=crop&w=60&h=60",
            "cat": "https://images.unsplash.com/photo-1574158622682-e40e69881006?ixlib=rb-4.0.3&auto=format&fit=crop&w=60&h=60",
        }

    def get_reason_templates(self) -> Dict[str, str]:
        return {
            "high": "Package expires in {days} days",
            "medium": "Balance: {uses} use(s) remaining",
            "low": "Inactive for {days} days",
        }


# 全局业务配置实例（可以在 app.py 中替换）
business_config: BusinessConfig = GroomingStoreConfig()
