"""Create Stripe products and prices, then write the plan catalog.

Run once per environment (test mode first):
    python -m app.billing.scripts.create_stripe_products

Each plan gets a Stripe product with a monthly and a yearly recurring
price. The resulting price IDs are stored on the matching
``subscription_plans`` row, which is created or updated by name.
"""

import asyncio

import stripe
from sqlalchemy import select
from stripe import StripeClient

from app.config import settings
from app.database import async_session_factory, engine
from app.models.plan import SubscriptionPlan

PLANS = [
    {
        "name": "essential",
        "display_name": "Essential",
        "description": "Perfect for individual students or parents",
        "price_monthly_cents": 1299,
        "price_yearly_cents": 11988,
        "features": [
            "Access to 100+ basic worksheets",
            "Download up to 10 worksheets per month",
            "Basic progress tracking",
            "Email support",
        ],
        "download_limit": 10,
    },
    {
        "name": "premium",
        "display_name": "Premium",
        "description": "Great for families and homeschooling",
        "price_monthly_cents": 2499,
        "price_yearly_cents": 23988,
        "features": [
            "Access to 500+ premium worksheets",
            "Unlimited downloads",
            "Advanced progress tracking",
            "Priority email support",
            "Customizable worksheets",
            "Up to 3 student profiles",
        ],
        "download_limit": 0,
    },
]


async def _create_prices(client: StripeClient, spec: dict) -> tuple[str, str]:
    product = await client.v1.products.create_async(
        params={
            "name": f"Worksheet Hub {spec['display_name']}",
            "description": spec["description"],
            "metadata": {"plan_name": spec["name"]},
        }
    )
    monthly = await client.v1.prices.create_async(
        params={
            "product": product.id,
            "unit_amount": spec["price_monthly_cents"],
            "currency": "usd",
            "recurring": {"interval": "month"},
        }
    )
    yearly = await client.v1.prices.create_async(
        params={
            "product": product.id,
            "unit_amount": spec["price_yearly_cents"],
            "currency": "usd",
            "recurring": {"interval": "year"},
        }
    )
    print(f"Created product: {product.name} ({product.id})")
    print(f"  Monthly: ${spec['price_monthly_cents'] / 100:.2f} ({monthly.id})")
    print(f"  Yearly:  ${spec['price_yearly_cents'] / 100:.2f} ({yearly.id})")
    return monthly.id, yearly.id


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    async with async_session_factory() as db:
        for spec in PLANS:
            monthly_id, yearly_id = await _create_prices(client, spec)

            result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.name == spec["name"]))
            plan = result.scalar_one_or_none()
            if plan is None:
                plan = SubscriptionPlan(name=spec["name"])
                db.add(plan)
            plan.display_name = spec["display_name"]
            plan.description = spec["description"]
            plan.billing_cycle = "monthly"
            plan.price_monthly_cents = spec["price_monthly_cents"]
            plan.price_yearly_cents = spec["price_yearly_cents"]
            plan.currency = "USD"
            plan.stripe_price_monthly_id = monthly_id
            plan.stripe_price_yearly_id = yearly_id
            plan.features = spec["features"]
            plan.download_limit = spec["download_limit"]
            plan.is_active = True
        await db.commit()

    await engine.dispose()
    print("\nPlan catalog updated.")


if __name__ == "__main__":
    asyncio.run(main())
